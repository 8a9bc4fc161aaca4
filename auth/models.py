"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data containers). Stores and the session manager do
the work; the only behavior here is derived state (RefreshSession.is_active)
and projection to the hash-free shapes that leave the core.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class Role(str, Enum):
    USER = "USER"
    CONTENT_CREATOR = "CONTENT_CREATOR"
    DEVELOPER = "DEVELOPER"
    SUPER_ADMIN = "SUPER_ADMIN"


@dataclass
class User:
    """A user record as far as the auth core cares about it.

    password_hash is None for social-login-only accounts (created through
    OAuth resolution); those accounts cannot use password login.
    """

    id: str
    email: str
    username: str
    name: str
    role: Role = Role.USER
    password_hash: str | None = None  # None = social-login-only
    email_verified: bool = False
    profile_image: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_public(self) -> PublicUser:
        return PublicUser(
            id=self.id,
            email=self.email,
            username=self.username,
            name=self.name,
            role=self.role,
            email_verified=self.email_verified,
            profile_image=self.profile_image,
            created_at=self.created_at,
        )

    def to_snapshot(self) -> UserSnapshot:
        return UserSnapshot(
            id=self.id,
            email=self.email,
            username=self.username,
            name=self.name,
            role=self.role,
            profile_image=self.profile_image,
        )


@dataclass(frozen=True)
class PublicUser:
    """User without the password hash -- what register/login/OAuth return."""

    id: str
    email: str
    username: str
    name: str
    role: Role
    email_verified: bool
    profile_image: str | None
    created_at: datetime | None


@dataclass(frozen=True)
class UserSnapshot:
    """Minimal live projection attached to a request after authentication."""

    id: str
    email: str
    username: str
    name: str
    role: Role
    profile_image: str | None


@dataclass
class RefreshSession:
    """Persisted identity of one refresh token.

    The token itself is never stored; jti is the join key. Rows are only ever
    mutated from revoked=False to revoked=True.
    """

    jti: str
    user_id: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.revoked and not self.is_expired(now)


@dataclass(frozen=True)
class AccessClaims:
    subject_id: str
    role: Role


@dataclass(frozen=True)
class RefreshClaims:
    subject_id: str
    jti: str
    type: str = "refresh"


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str
    refresh_token_expires_at: datetime


@dataclass(frozen=True)
class AuthResult:
    """Outcome of register, login and OAuth resolution."""

    user: PublicUser
    tokens: AuthTokens


@dataclass(frozen=True)
class RotationResult:
    """Outcome of a refresh rotation -- the new pair, no user payload."""

    tokens: AuthTokens
