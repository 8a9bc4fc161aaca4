"""
auth/passwords.py -- bcrypt password hashing.

Using bcrypt directly rather than passlib[bcrypt]: passlib's wrap-bug
detection builds a password longer than 72 bytes, which current bcrypt
releases reject outright.

Passwords longer than 72 bytes are rejected by bcrypt. The API layer caps
password fields at 72 UTF-8 bytes, so hash() only fails on genuine internal
errors.

compare() fails closed: any exception from bcrypt (malformed hash, oversized
input) is logged and reported as a mismatch. Callers cannot distinguish "wrong
password" from "comparison blew up", which keeps the login path from becoming
an oracle.
"""

from __future__ import annotations

import logging

import bcrypt

from auth.errors import HashingFailure

logger = logging.getLogger("sessionkit.auth.passwords")

SALT_ROUNDS = 10


class PasswordHasher:
    """bcrypt hashing with a fixed work factor.

    Usage:
        hasher = PasswordHasher()
        stored = hasher.hash("Secret123!")
        hasher.compare("Secret123!", stored)   # True
    """

    def __init__(self, rounds: int = SALT_ROUNDS) -> None:
        self.rounds = rounds
        # Timing equalization: computed once so "unknown account" and
        # "no password set" paths cost one real bcrypt comparison.
        self._dummy_hash = self.hash("sessionkit_timing_dummy")

    def hash(self, plaintext: str) -> str:
        """Return a salted bcrypt hash of plaintext. Raises HashingFailure on internal error."""
        try:
            return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")
        except Exception as exc:
            logger.exception("Password hashing failed")
            raise HashingFailure("Could not process password.") from exc

    def compare(self, plaintext: str, hashed: str) -> bool:
        """Return True only if plaintext matches hashed. Never raises."""
        try:
            return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("utf-8"))
        except Exception:
            logger.warning("Password comparison errored; treating as mismatch", exc_info=True)
            return False

    def compare_dummy(self, plaintext: str) -> None:
        """Spend one comparison's worth of work against the dummy hash."""
        self.compare(plaintext, self._dummy_hash)
