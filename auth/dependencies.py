"""
auth/dependencies.py -- Request authentication and FastAPI Depends() helpers.

RequestAuthenticator is the framework-free gate: given a bearer token and a
"required" flag it returns a live UserSnapshot, None (anonymous), or raises
Unauthorized. The claims in the token are only trusted to say *who*; the
user is re-read from the store on every request so deleted accounts and role
changes take effect immediately.

Any token problem (bad signature, expired, wrong type, user gone) collapses to
the same outcome -- anonymous when optional, a generic 401 when required. The
specific reason goes to the debug log only.

FastAPI glue:
  get_optional_user()  -- soft variant, returns None when unauthenticated.
  get_current_user()   -- raises Unauthorized (401) when unauthenticated.
  require_role(*roles) -- flat set-membership check, Forbidden (403) otherwise.
Each stores the resolved identity on request.state.user.

Layer rule: may import fastapi (this module is part of the DI system). No
imports from api/ or core/; the authenticator instance comes from
request.app.state.authenticator, built in the app lifespan.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Request

from auth.errors import Forbidden, TokenInvalid, Unauthorized
from auth.models import Role, UserSnapshot
from auth.store import CredentialStore
from auth.tokens import TokenCodec

logger = logging.getLogger("sessionkit.auth.dependencies")

_BEARER_PREFIX = "Bearer "


class RequestAuthenticator:
    """Verifies access tokens and resolves them to a fresh user snapshot."""

    def __init__(self, codec: TokenCodec, store: CredentialStore) -> None:
        self.codec = codec
        self.store = store

    def authenticate(self, token: str | None, required: bool = False) -> UserSnapshot | None:
        if not token:
            if required:
                raise Unauthorized("Authentication required. No token provided.")
            return None

        try:
            claims = self.codec.verify_access(token)
        except TokenInvalid as exc:
            logger.debug("Access token rejected: %s", exc.reason)
            return self._reject(required, "Your session is invalid or has expired. Please log in again.")

        user = self.store.find_user_by_id(claims.subject_id)
        if user is None:
            return self._reject(required, "User associated with this token no longer exists.")
        return user.to_snapshot()

    @staticmethod
    def _reject(required: bool, message: str) -> None:
        if required:
            raise Unauthorized(message)
        return None


def bearer_token(request: Request) -> str | None:
    """Extract the token from an "Authorization: Bearer <token>" header, if any."""
    header = request.headers.get("Authorization", "")
    if header.startswith(_BEARER_PREFIX):
        return header[len(_BEARER_PREFIX) :].strip() or None
    return None


def _resolve(request: Request, required: bool) -> UserSnapshot | None:
    authenticator: RequestAuthenticator = request.app.state.authenticator
    user = authenticator.authenticate(bearer_token(request), required=required)
    request.state.user = user
    return user


def get_optional_user(request: Request) -> UserSnapshot | None:
    """Attach the caller's identity if there is a valid token; never raises.

    Use as a FastAPI dependency:
        @router.get("/feed")
        def route(user: UserSnapshot | None = Depends(get_optional_user)): ...
    """
    return _resolve(request, required=False)


def get_current_user(request: Request) -> UserSnapshot:
    """Require authentication. Raises Unauthorized (401) if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: UserSnapshot = Depends(get_current_user)): ...
    """
    return _resolve(request, required=True)


def require_role(*roles: Role) -> Callable[[Request], UserSnapshot]:
    """Build a dependency that admits only users whose role is in `roles`.

    Use as a FastAPI dependency:
        @router.get("/admin-only")
        def route(user: UserSnapshot = Depends(require_role(Role.SUPER_ADMIN))): ...
    """
    allowed = frozenset(roles)

    def dependency(request: Request) -> UserSnapshot:
        user = get_current_user(request)
        if user.role not in allowed:
            raise Forbidden("Forbidden: You do not have permission to access this resource.")
        return user

    return dependency
