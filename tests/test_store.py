"""Unit tests for auth/store.py -- CredentialStore persistence.

Covers:
- create_user / find_user_by_* round trip, with UTC-aware timestamps
- ensure_unique() reports email before username
- create_user() maps a unique violation to Conflict with the right field
- transaction() rolls back every write when the block raises
- revoke_session() is conditional: True once, then False
- revoke_all_sessions() only counts active sessions
- count_active_sessions() ignores revoked and expired rows
- delete_user() cascades to refresh sessions
- database failures surface as StoreUnavailable
- connect_with_retry() retries with a fixed delay, then exits
"""

from __future__ import annotations

import uuid
from datetime import timezone

import pytest

from auth.errors import Conflict, StoreUnavailable
from auth.models import Role, User
from auth.store import CredentialStore, connect_with_retry

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _shared_url() -> str:
    return f"sqlite:///file:test_store_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _add_user(store: CredentialStore, email: str = "ada@example.com", username: str = "ada") -> User:
    with store.transaction() as tx:
        return tx.create_user(email, username, "$2b$04$hash", "Ada Lovelace")


@pytest.fixture
def stores():
    """Two stores over one database: normal TTL and an already-expired TTL.

    Sessions written through `expired` are past their expiry the moment they
    are created, which is the only way to get expired rows without a clock.
    """
    url = _shared_url()
    live = CredentialStore(url, refresh_ttl_days=7)
    live.create_schema()
    expired = CredentialStore(url, refresh_ttl_days=-1)
    yield live, expired
    expired.close()
    live.close()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class TestUsers:
    """User rows: creation, lookup, uniqueness."""

    def test_create_and_find(self, store: CredentialStore) -> None:
        user = _add_user(store)
        by_id = store.find_user_by_id(user.id)
        assert by_id is not None
        assert by_id.email == "ada@example.com"
        assert by_id.role is Role.USER
        assert by_id.email_verified is False
        assert by_id.password_hash == "$2b$04$hash"
        assert by_id.created_at.tzinfo is not None
        assert by_id.created_at.utcoffset() == timezone.utc.utcoffset(None)
        assert store.find_user_by_email("ada@example.com").id == user.id
        assert store.find_user_by_username("ada").id == user.id

    def test_missing_user_is_none(self, store: CredentialStore) -> None:
        assert store.find_user_by_id("nope") is None
        assert store.find_user_by_email("nobody@example.com") is None

    def test_social_user_has_no_hash(self, store: CredentialStore) -> None:
        with store.transaction() as tx:
            user = tx.create_user("g@example.com", "g_1234", None, "G", email_verified=True, profile_image="http://i")
        stored = store.find_user_by_id(user.id)
        assert stored.password_hash is None
        assert stored.email_verified is True
        assert stored.profile_image == "http://i"

    def test_ensure_unique_reports_email_first(self, store: CredentialStore) -> None:
        _add_user(store)
        with pytest.raises(Conflict) as exc_info:
            with store.transaction() as tx:
                tx.ensure_unique("ada@example.com", "ada")
        assert exc_info.value.field == "email"
        assert exc_info.value.status_code == 409

    def test_ensure_unique_reports_username(self, store: CredentialStore) -> None:
        _add_user(store)
        with pytest.raises(Conflict) as exc_info:
            with store.transaction() as tx:
                tx.ensure_unique("other@example.com", "ada")
        assert exc_info.value.field == "username"
        assert exc_info.value.message == "This username is already taken."

    def test_duplicate_insert_maps_to_conflict(self, store: CredentialStore) -> None:
        """Without the pre-check, the unique index still yields a typed Conflict."""
        _add_user(store)
        with pytest.raises(Conflict) as exc_info:
            _add_user(store, email="second@example.com", username="ada")
        assert exc_info.value.field == "username"

        with pytest.raises(Conflict) as exc_info:
            _add_user(store, email="ada@example.com", username="someone")
        assert exc_info.value.field == "email"

    def test_update_password_hash(self, store: CredentialStore) -> None:
        user = _add_user(store)
        with store.transaction() as tx:
            assert tx.update_password_hash(user.id, "$2b$04$other") is True
        assert store.find_user_by_id(user.id).password_hash == "$2b$04$other"


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransactions:
    """transaction() commits on clean exit and rolls back on any exception."""

    def test_rollback_discards_every_write(self, store: CredentialStore) -> None:
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                user = tx.create_user("ada@example.com", "ada", "$2b$04$hash", "Ada")
                tx.create_session(user.id)
                raise RuntimeError("crash between steps")
        assert store.find_user_by_email("ada@example.com") is None

    def test_rollback_keeps_old_session_live(self, store: CredentialStore) -> None:
        """A failed revoke+create pair leaves the original session untouched."""
        user = _add_user(store)
        with store.transaction() as tx:
            session = tx.create_session(user.id)

        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                assert tx.revoke_session(session.jti) is True
                raise RuntimeError("signing failed")

        assert store.get_session(session.jti).revoked is False
        assert store.count_active_sessions(user.id) == 1


# ---------------------------------------------------------------------------
# Refresh sessions
# ---------------------------------------------------------------------------


class TestSessions:
    """Refresh session rows: create, revoke, count, cascade."""

    def test_create_session(self, store: CredentialStore) -> None:
        user = _add_user(store)
        with store.transaction() as tx:
            session = tx.create_session(user.id)
        stored = store.get_session(session.jti)
        assert stored.user_id == user.id
        assert stored.revoked is False
        assert stored.is_active()
        assert stored.expires_at.tzinfo is not None
        assert abs((stored.expires_at - stored.created_at).days - 7) <= 1

    def test_revoke_is_conditional(self, store: CredentialStore) -> None:
        user = _add_user(store)
        with store.transaction() as tx:
            session = tx.create_session(user.id)
        assert store.revoke_session(session.jti) is True
        assert store.revoke_session(session.jti) is False
        assert store.get_session(session.jti).revoked is True

    def test_revoke_unknown_jti(self, store: CredentialStore) -> None:
        assert store.revoke_session("missing") is False

    def test_revoke_all_counts_only_active(self, stores) -> None:
        live, expired = stores
        user = _add_user(live)
        with live.transaction() as tx:
            tx.create_session(user.id)
            tx.create_session(user.id)
            already = tx.create_session(user.id)
            tx.revoke_session(already.jti)
        with expired.transaction() as tx:
            tx.create_session(user.id)

        assert live.count_active_sessions(user.id) == 2
        assert live.revoke_all_sessions(user.id) == 2
        assert live.count_active_sessions(user.id) == 0
        assert live.revoke_all_sessions(user.id) == 0

    def test_revoke_all_leaves_other_users(self, store: CredentialStore) -> None:
        ada = _add_user(store)
        bob = _add_user(store, email="bob@example.com", username="bob")
        with store.transaction() as tx:
            tx.create_session(ada.id)
            tx.create_session(bob.id)
        store.revoke_all_sessions(ada.id)
        assert store.count_active_sessions(bob.id) == 1

    def test_expired_session_is_not_active(self, stores) -> None:
        live, expired = stores
        user = _add_user(live)
        with expired.transaction() as tx:
            session = tx.create_session(user.id)
        stored = live.get_session(session.jti)
        assert stored.revoked is False
        assert stored.is_expired()
        assert not stored.is_active()
        assert live.count_active_sessions(user.id) == 0

    def test_delete_user_cascades(self, store: CredentialStore) -> None:
        user = _add_user(store)
        with store.transaction() as tx:
            session = tx.create_session(user.id)
        assert store.delete_user(user.id) is True
        assert store.find_user_by_id(user.id) is None
        assert store.get_session(session.jti) is None

    def test_session_requires_existing_user(self, store: CredentialStore) -> None:
        """foreign_keys=ON: an orphan session is a database error, not a silent insert."""
        with pytest.raises(StoreUnavailable):
            with store.transaction() as tx:
                tx.create_session("no-such-user")


# ---------------------------------------------------------------------------
# Failures and connection lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Error mapping, ping and startup retry."""

    def test_missing_schema_is_store_unavailable(self) -> None:
        bare = CredentialStore(_shared_url())
        try:
            with pytest.raises(StoreUnavailable) as exc_info:
                bare.find_user_by_email("ada@example.com")
            assert exc_info.value.status_code == 500
            assert exc_info.value.message == "A database error occurred."
        finally:
            bare.close()

    def test_create_schema_is_idempotent(self, store: CredentialStore) -> None:
        store.create_schema()
        store.ping()

    def test_connect_with_retry_succeeds_first_try(self, store: CredentialStore) -> None:
        sleeps: list[float] = []
        connect_with_retry(store, attempts=3, delay=2.0, sleep=sleeps.append)
        assert sleeps == []

    def test_connect_with_retry_recovers(self, store: CredentialStore, monkeypatch) -> None:
        calls = {"n": 0}
        real_ping = store.ping

        def flaky_ping() -> None:
            calls["n"] += 1
            if calls["n"] < 3:
                raise StoreUnavailable("A database error occurred.")
            real_ping()

        monkeypatch.setattr(store, "ping", flaky_ping)
        sleeps: list[float] = []
        connect_with_retry(store, attempts=5, delay=1.5, sleep=sleeps.append)
        assert calls["n"] == 3
        assert sleeps == [1.5, 1.5]

    def test_connect_with_retry_exits_when_exhausted(self, store: CredentialStore, monkeypatch) -> None:
        def dead_ping() -> None:
            raise StoreUnavailable("A database error occurred.")

        monkeypatch.setattr(store, "ping", dead_ping)
        sleeps: list[float] = []
        with pytest.raises(SystemExit) as exc_info:
            connect_with_retry(store, attempts=5, delay=5.0, sleep=sleeps.append)
        assert exc_info.value.code == 1
        assert sleeps == [5.0] * 4
