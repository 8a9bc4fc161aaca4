"""
auth/tokens.py -- JWT signing and verification for access and refresh tokens.

Security design decisions:
  JWT: python-jose with HS256. Two independent secrets -- one for access
       tokens, one for refresh tokens -- so a leaked or misused refresh key
       cannot mint access tokens. Every token also carries a "type" claim that
       verification checks, so even a shared key would not let one kind pass
       as the other.

  Access tokens: {sub, role, type="access", iat, exp}. Short-lived
       (seconds-scale TTL). The role claim is a hint only; the request
       authenticator re-reads the user from the store on every request.

  Refresh tokens: {sub, type="refresh", jti, iat, exp}. The jti is the join
       key to a RefreshSession row. verify_refresh() checks only the signature
       and claims -- store-side liveness belongs to the session manager.

  Failures: every verification problem raises TokenInvalid with a reason for
       the logs. Callers decide what the client sees.

Layer rule: no imports from api/ or core/. The codec is constructed with
plain values (secrets and TTLs) by whoever owns configuration.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import InternalFailure, TokenInvalid
from auth.models import AccessClaims, RefreshClaims, Role

logger = logging.getLogger("sessionkit.auth.tokens")

_ALGORITHM = "HS256"

ACCESS_TYPE = "access"
REFRESH_TYPE = "refresh"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """Signs and verifies access/refresh JWTs.

    Usage:
        codec = TokenCodec(access_secret, 900, refresh_secret, 7)
        token = codec.sign_access(user.id, user.role)
        claims = codec.verify_access(token)      # AccessClaims
    """

    def __init__(
        self,
        access_secret: str,
        access_ttl_seconds: int,
        refresh_secret: str,
        refresh_ttl_days: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl = timedelta(seconds=access_ttl_seconds)
        self.refresh_ttl = timedelta(days=refresh_ttl_days)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def sign_access(self, subject_id: str, role: Role | str) -> str:
        issued = self.now()
        payload = {
            "sub": str(subject_id),
            "role": Role(role).value,
            "type": ACCESS_TYPE,
            "iat": issued,
            "exp": issued + self.access_ttl,
        }
        token = self._encode(payload, self._access_secret)
        logger.debug("Generated access token for user %s", subject_id)
        return token

    def verify_access(self, token: str) -> AccessClaims:
        """Return the identity in a valid access token. Raises TokenInvalid otherwise."""
        payload = self._decode(token, self._access_secret)
        if payload.get("type") != ACCESS_TYPE:
            raise TokenInvalid("wrong token type")
        subject_id = payload.get("sub")
        if not subject_id:
            raise TokenInvalid("missing subject")
        try:
            role = Role(payload.get("role"))
        except ValueError as exc:
            raise TokenInvalid("unknown role") from exc
        return AccessClaims(subject_id=subject_id, role=role)

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def sign_refresh(self, subject_id: str, jti: str, expires_at: datetime | None = None) -> str:
        """Sign a refresh token for an existing session.

        expires_at should be the session row's expiry so token and row die
        together; it defaults to now + refresh TTL.
        """
        issued = self.now()
        payload = {
            "sub": str(subject_id),
            "type": REFRESH_TYPE,
            "jti": jti,
            "iat": issued,
            "exp": expires_at or issued + self.refresh_ttl,
        }
        return self._encode(payload, self._refresh_secret)

    def verify_refresh(self, token: str) -> RefreshClaims:
        """Check signature, expiry, type and shape. Does not consult the store."""
        payload = self._decode(token, self._refresh_secret)
        if payload.get("type") != REFRESH_TYPE:
            raise TokenInvalid("wrong token type")
        subject_id = payload.get("sub")
        jti = payload.get("jti")
        if not subject_id or not jti:
            raise TokenInvalid("invalid refresh token payload structure")
        return RefreshClaims(subject_id=subject_id, jti=jti, type=REFRESH_TYPE)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _encode(self, payload: dict, secret: str) -> str:
        try:
            return jwt.encode(payload, secret, algorithm=_ALGORITHM)
        except JWTError as exc:
            logger.exception("Token signing failed")
            raise InternalFailure("Could not issue session tokens.") from exc

    def _decode(self, token: str, secret: str) -> dict:
        # jose checks exp against the wall clock; the injected clock only
        # drives issuance.
        try:
            return jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenInvalid("token expired") from exc
        except JWTError as exc:
            raise TokenInvalid(str(exc) or "invalid token") from exc
