"""
auth/sessions.py -- Session lifecycle: register, login, rotate, logout, revoke.

SessionManager is the only place that combines the store, the token codec and
the password hasher. Everything it does to more than one row happens inside a
single CredentialStore.transaction(): a crash between "revoke old session" and
"create new session" must never leave a user with no session at all.

Policies:
  Single active lineage: password login and OAuth resolution revoke every
      active session for the account before issuing a new one.

  Single-use rotation: rotating a refresh token always revokes its jti and
      creates a new session. The revoke is a conditional UPDATE, so when two
      requests race with the same token only one of them gets a new pair.

  Owner mismatch: a refresh token whose subject differs from the stored
      owner of its jti is treated as forgery/replay. The session is voided
      (and that revocation committed) before the request fails.

  Logout never fails from the caller's point of view.

Tokens are signed inside the transaction block, so a signing failure rolls
back the session row it would have described.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import re
import secrets

from auth.errors import BadRequest, Forbidden, NotFound, TokenInvalid, Unauthorized
from auth.models import AuthResult, AuthTokens, RefreshSession, RotationResult, User
from auth.passwords import PasswordHasher
from auth.store import CredentialStore, StoreTransaction
from auth.tokens import TokenCodec

logger = logging.getLogger("sessionkit.auth.sessions")

_DEFAULT_OAUTH_NAME = "New User"


class SessionManager:
    """Issues, rotates and revokes access/refresh credential pairs.

    Usage:
        manager = SessionManager(store, codec, hasher)
        result = manager.login("a@x.com", "Secret123!")
        rotated = manager.rotate_refresh(result.tokens.refresh_token)
    """

    def __init__(self, store: CredentialStore, codec: TokenCodec, hasher: PasswordHasher) -> None:
        self.store = store
        self.codec = codec
        self.hasher = hasher

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def register(self, email: str, username: str, password: str, name: str) -> AuthResult:
        """Create an account and its first session. Raises Conflict on a taken email/username."""
        with self.store.transaction() as tx:
            tx.ensure_unique(email, username)
            password_hash = self.hasher.hash(password)
            user = tx.create_user(email, username, password_hash, name)
            tokens = self._issue(tx, user)
        return AuthResult(user=user.to_public(), tokens=tokens)

    def login(self, email: str, password: str) -> AuthResult:
        """Password login. Revokes every prior session on success.

        Failure messages distinguish unknown email from wrong password; bcrypt
        runs on every path so response time does not.
        """
        user = self.store.find_user_by_email(email)
        if user is None:
            self.hasher.compare_dummy(password)
            raise NotFound("No account found with this email address.")
        if not user.password_hash:
            self.hasher.compare_dummy(password)
            raise BadRequest("This account uses a social provider. Please log in with your social account.")
        if not self.hasher.compare(password, user.password_hash):
            raise Unauthorized("The password you entered is incorrect.")

        logger.info("User login successful, revoking old sessions (user_id=%s)", user.id)
        with self.store.transaction() as tx:
            tx.revoke_all_sessions(user.id)
            tokens = self._issue(tx, user)
        return AuthResult(user=user.to_public(), tokens=tokens)

    def resolve_oauth_identity(self, email: str, name: str | None = None, image: str | None = None) -> AuthResult:
        """Find-or-create the account behind a provider-verified email and start a session.

        Existing accounts keep their stored name and image; provider values
        only fill gaps. New accounts get a synthesized username, no password,
        and email_verified=True.
        """
        with self.store.transaction() as tx:
            user = tx.find_user_by_email(email)
            if user is not None:
                logger.info("Found existing user for OAuth login (user_id=%s)", user.id)
                user = tx.update_oauth_profile(
                    user.id,
                    name=user.name or name or _DEFAULT_OAUTH_NAME,
                    profile_image=user.profile_image or image,
                )
            else:
                logger.info("Creating new user from OAuth profile")
                user = tx.create_user(
                    email,
                    _oauth_username(email),
                    None,
                    name or _DEFAULT_OAUTH_NAME,
                    email_verified=True,
                    profile_image=image,
                )
            tx.revoke_all_sessions(user.id)
            tokens = self._issue(tx, user)
        return AuthResult(user=user.to_public(), tokens=tokens)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate_refresh(self, refresh_token: str | None) -> RotationResult:
        """Exchange a live refresh token for a new access/refresh pair.

        Raises Unauthorized when no token is given and Forbidden for every
        other failure.
        """
        if not refresh_token:
            raise Unauthorized("Refresh token is required.")
        try:
            claims = self.codec.verify_refresh(refresh_token)
        except TokenInvalid as exc:
            logger.warning("Refresh token rejected: %s", exc.reason)
            raise Forbidden("Your session is invalid. Please log in again.") from exc

        # Failures that must persist a revocation are raised after the
        # transaction commits; the rest are raised inside it and roll back.
        failure: Forbidden | None = None
        with self.store.transaction() as tx:
            session = tx.get_session(claims.jti)
            _ensure_usable(session)

            if session.user_id != claims.subject_id:
                tx.revoke_session(claims.jti)
                logger.critical(
                    "CRITICAL: Refresh token user mismatch. Token voided. (jti=%s, expected_user=%s, actual_user=%s)",
                    claims.jti,
                    session.user_id,
                    claims.subject_id,
                )
                failure = Forbidden("Session invalid; token has been voided.")
            else:
                user = tx.find_user_by_id(session.user_id)
                if user is None:
                    tx.revoke_session(claims.jti)
                    logger.warning("Refresh for deleted user; session voided (jti=%s)", claims.jti)
                    failure = Forbidden("Forbidden: User account not found.")
                else:
                    if not tx.revoke_session(claims.jti):
                        # Lost a race with another rotation of the same token.
                        raise Forbidden("Session has been revoked. Please log in again.")
                    tokens = self._issue(tx, user)

        if failure is not None:
            raise failure
        logger.info("Refresh token rotated (old_jti=%s, user_id=%s)", claims.jti, claims.subject_id)
        return RotationResult(tokens=tokens)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def logout(self, refresh_token: str | None) -> None:
        """Revoke the session behind refresh_token. Never raises."""
        if not refresh_token:
            logger.warning("Logout attempt without a refresh token")
            return
        try:
            claims = self.codec.verify_refresh(refresh_token)
            self.store.revoke_session(claims.jti)
        except Exception:
            logger.warning("Logout failed: could not verify or revoke token", exc_info=True)
            return
        logger.info("User logged out, token revoked (user_id=%s, jti=%s)", claims.subject_id, claims.jti)

    def logout_all(self, user_id: str) -> int:
        """Revoke every active session for user_id. Returns the number revoked."""
        count = self.store.revoke_all_sessions(user_id)
        logger.info("Signed out everywhere (user_id=%s, count=%d)", user_id, count)
        return count

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        """Replace the password hash and revoke every session, atomically."""
        user = self.store.find_user_by_id(user_id)
        if user is None or not user.password_hash:
            raise Unauthorized("User not found or has no password set.")
        if not self.hasher.compare(current_password, user.password_hash):
            raise Unauthorized("The current password you entered is incorrect.")

        new_hash = self.hasher.hash(new_password)
        with self.store.transaction() as tx:
            tx.update_password_hash(user_id, new_hash)
            tx.revoke_all_sessions(user_id)
        logger.info("User password changed; all sessions revoked (user_id=%s)", user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue(self, tx: StoreTransaction, user: User) -> AuthTokens:
        access_token = self.codec.sign_access(user.id, user.role)
        session = tx.create_session(user.id)
        refresh_token = self.codec.sign_refresh(user.id, session.jti, session.expires_at)
        return AuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_token_expires_at=session.expires_at,
        )


def _ensure_usable(session: RefreshSession | None) -> None:
    if session is None:
        raise Forbidden("Session not found. Please log in again.")
    if session.revoked:
        raise Forbidden("Session has been revoked. Please log in again.")
    if session.is_expired():
        raise Forbidden("Session has expired. Please log in again.")


def _oauth_username(email: str) -> str:
    """Build "<alnum local-part>_<8 hex chars>" from an email address."""
    base = re.sub(r"[^a-zA-Z0-9]", "", email.split("@")[0])
    return f"{base}_{secrets.token_hex(4)}"
