"""
auth/errors.py -- Typed failures raised by the auth core.

Every exception that crosses the core boundary is an AuthError subclass with a
stable machine-readable code and the HTTP status the API layer should use.
Messages are safe to show to clients. Driver and library errors are logged
where they happen and re-raised as one of these, chained with `from exc`.

TokenInvalid is the one exception that stays inside the core: the token codec
raises it and the session manager / request authenticator translate it.

Layer rule: no imports. Every other auth/ module may import from here.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for auth-core failures mapped to HTTP responses."""

    status_code: int = 400
    code: str = "bad_request"

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class BadRequest(AuthError):
    """The request cannot be served for this account (400)."""

    status_code = 400
    code = "bad_request"


class Unauthorized(AuthError):
    """Bad credentials or a missing/invalid access token (401)."""

    status_code = 401
    code = "unauthorized"


class Forbidden(AuthError):
    """Refresh session unusable, or role not permitted (403)."""

    status_code = 403
    code = "forbidden"


class NotFound(AuthError):
    """No such account (404)."""

    status_code = 404
    code = "not_found"


class Conflict(AuthError):
    """Uniqueness violation on registration (409).

    field names the column that collided ("email" or "username") so callers
    can highlight the right input.
    """

    status_code = 409
    code = "conflict"

    def __init__(self, message: str, *, field: str, detail: str | None = None) -> None:
        super().__init__(message, detail=detail)
        self.field = field


class InternalFailure(AuthError):
    """Hashing, signing or storage infrastructure failed (500)."""

    status_code = 500
    code = "internal_error"


class HashingFailure(InternalFailure):
    """bcrypt could not produce a hash."""


class StoreUnavailable(InternalFailure):
    """The database rejected or failed a statement."""


class TokenInvalid(Exception):
    """A token failed signature, expiry, type or shape checks.

    reason is for logs only; it is never echoed to clients.
    """

    code = "token_invalid"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


__all__ = [
    "AuthError",
    "BadRequest",
    "Unauthorized",
    "Forbidden",
    "NotFound",
    "Conflict",
    "InternalFailure",
    "HashingFailure",
    "StoreUnavailable",
    "TokenInvalid",
]
