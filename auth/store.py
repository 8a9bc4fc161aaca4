"""
auth/store.py -- SQLAlchemy Core persistence layer for users and refresh sessions.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_session are the mappers. Session manager and route
code never touch SQL directly.

Transactions:
  Every multi-step sequence (uniqueness check + insert user + create session,
  revoke old session + create new one, update hash + revoke all) runs through
  CredentialStore.transaction(), which wraps one engine.begin() block and
  yields a StoreTransaction bound to that connection. Leaving the block
  normally commits; any exception rolls everything back. There is no
  "connection or engine" optional argument anywhere -- code that needs
  atomicity holds a StoreTransaction, code that does not calls the plain
  read methods on CredentialStore.

Errors:
  IntegrityError on the users table becomes Conflict with the offending
  field. Any other SQLAlchemyError is logged with context and re-raised as
  StoreUnavailable. Raw driver exceptions never leave this module.

Timestamps:
  Stored as timezone-aware UTC. SQLite hands DateTime values back naive, so
  _as_utc() re-attaches UTC on read.

Security:
  All queries use bound parameters. The only f-string SQL is the PostgreSQL
  statement_timeout, built from a validated int.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import Conflict, StoreUnavailable
from auth.models import RefreshSession, Role, User

logger = logging.getLogger("sessionkit.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("username", String(64), nullable=False, unique=True),
    Column("name", Text, nullable=False),
    Column("hashed_password", Text),  # NULL for social-login-only users
    Column("system_role", String(30), nullable=False, server_default=Role.USER.value),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("profile_image", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("revoked", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    PRAGMAs are per-connection, so they have to be applied in the connect
    hook. foreign_keys=ON is what makes deleting a user cascade to its
    refresh sessions.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _conflict_field(exc: IntegrityError) -> str:
    """Name the unique column an IntegrityError tripped on.

    SQLite reports "UNIQUE constraint failed: users.username"; PostgreSQL
    reports the constraint name (users_username_key). Both contain the column.
    """
    return "username" if "username" in str(exc.orig) else "email"


def _conflict(field: str) -> Conflict:
    if field == "email":
        return Conflict("An account with this email already exists.", field="email")
    return Conflict("This username is already taken.", field="username")


# ---------------------------------------------------------------------------
# Transaction-bound operations
# ---------------------------------------------------------------------------


class StoreTransaction:
    """Store operations bound to one open connection.

    Obtained from CredentialStore.transaction() (atomic, commits on exit) or
    internally from CredentialStore's plain read helpers. Never commits on its
    own.
    """

    def __init__(self, conn: Connection, refresh_ttl: timedelta) -> None:
        self.conn = conn
        self._refresh_ttl = refresh_ttl

    # -- users ----------------------------------------------------------

    def find_user_by_email(self, email: str) -> User | None:
        row = self.conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_username(self, username: str) -> User | None:
        row = self.conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_id(self, user_id: str) -> User | None:
        row = self.conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def ensure_unique(self, email: str, username: str) -> None:
        """Raise Conflict if email or username is taken. Email is reported first."""
        row = self.conn.execute(
            select(_users.c.email, _users.c.username)
            .where((_users.c.email == email) | (_users.c.username == username))
            .limit(1)
        ).fetchone()
        if row is None:
            return
        raise _conflict("email" if row.email == email else "username")

    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str | None,
        name: str,
        *,
        role: Role = Role.USER,
        email_verified: bool = False,
        profile_image: str | None = None,
    ) -> User:
        """Insert a user and return it. Raises Conflict on a duplicate email/username.

        Callers normally run ensure_unique() first in the same transaction;
        the IntegrityError branch covers a concurrent insert that won the race.
        """
        now = _now()
        user_id = str(uuid.uuid4())
        try:
            self.conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=email,
                    username=username,
                    name=name,
                    hashed_password=password_hash,
                    system_role=Role(role).value,
                    email_verified=email_verified,
                    profile_image=profile_image,
                    created_at=now,
                    updated_at=now,
                )
            )
        except IntegrityError as exc:
            field = _conflict_field(exc)
            logger.warning("Unique constraint violation during user creation (field=%s)", field)
            raise _conflict(field) from exc
        logger.info("New user created (user_id=%s)", user_id)
        return User(
            id=user_id,
            email=email,
            username=username,
            name=name,
            role=Role(role),
            password_hash=password_hash,
            email_verified=email_verified,
            profile_image=profile_image,
            created_at=now,
            updated_at=now,
        )

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        result = self.conn.execute(
            _users.update().where(_users.c.id == user_id).values(hashed_password=password_hash, updated_at=_now())
        )
        return result.rowcount > 0

    def update_oauth_profile(self, user_id: str, name: str, profile_image: str | None) -> User | None:
        self.conn.execute(
            _users.update()
            .where(_users.c.id == user_id)
            .values(name=name, profile_image=profile_image, updated_at=_now())
        )
        return self.find_user_by_id(user_id)

    def delete_user(self, user_id: str) -> bool:
        """Delete a user. Their refresh sessions go with them (ON DELETE CASCADE)."""
        result = self.conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # -- refresh sessions -----------------------------------------------

    def create_session(self, user_id: str) -> RefreshSession:
        """Insert a fresh active session with a new jti."""
        now = _now()
        session = RefreshSession(
            jti=str(uuid.uuid4()),
            user_id=user_id,
            expires_at=now + self._refresh_ttl,
            revoked=False,
            created_at=now,
        )
        self.conn.execute(
            _refresh_tokens.insert().values(
                jti=session.jti,
                user_id=session.user_id,
                expires_at=session.expires_at,
                revoked=False,
                created_at=now,
            )
        )
        logger.info("Refresh session stored (jti=%s, user_id=%s)", session.jti, user_id)
        return session

    def get_session(self, jti: str) -> RefreshSession | None:
        row = self.conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.jti == jti)).fetchone()
        return _row_to_session(row) if row is not None else None

    def revoke_session(self, jti: str) -> bool:
        """Flip one session to revoked. Returns False if it was absent or already revoked.

        The WHERE revoked = false guard makes this the arbitration point for
        concurrent rotations of the same jti: exactly one caller sees True.
        """
        result = self.conn.execute(
            _refresh_tokens.update()
            .where((_refresh_tokens.c.jti == jti) & (_refresh_tokens.c.revoked.is_(False)))
            .values(revoked=True)
        )
        if result.rowcount == 0:
            logger.warning("Session %s not revoked; it is already revoked or gone", jti)
            return False
        return True

    def revoke_all_sessions(self, user_id: str) -> int:
        """Revoke every active session for a user and return how many flipped."""
        result = self.conn.execute(
            _refresh_tokens.update()
            .where(
                (_refresh_tokens.c.user_id == user_id)
                & (_refresh_tokens.c.revoked.is_(False))
                & (_refresh_tokens.c.expires_at > _now())
            )
            .values(revoked=True)
        )
        logger.info("Revoked all active sessions (user_id=%s, count=%d)", user_id, result.rowcount)
        return result.rowcount

    def count_active_sessions(self, user_id: str) -> int:
        count = self.conn.execute(
            select(func.count())
            .select_from(_refresh_tokens)
            .where(
                (_refresh_tokens.c.user_id == user_id)
                & (_refresh_tokens.c.revoked.is_(False))
                & (_refresh_tokens.c.expires_at > _now())
            )
        ).scalar()
        return count or 0


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users and refresh sessions.

    Usage:
        store = CredentialStore("sqlite:///auth.db", refresh_ttl_days=7)
        with store.transaction() as tx:
            tx.ensure_unique(email, username)
            user = tx.create_user(email, username, hashed, name)
            session = tx.create_session(user.id)
        store.find_user_by_id(user.id)     # plain pooled read
        store.close()
    """

    def __init__(
        self,
        db_url: str,
        refresh_ttl_days: int = 7,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.refresh_ttl = timedelta(days=refresh_ttl_days)
        self._statement_timeout_ms = int(statement_timeout_ms)
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = self._statement_timeout_ms / 1000
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        self._is_postgres = self.engine.dialect.name == "postgresql"

    def create_schema(self) -> None:
        """Create tables if missing. Idempotent -- safe on every startup."""
        with self._wrap_errors("create_schema"):
            _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Scopes
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Open one atomic unit of work. Commit on clean exit, roll back on any exception."""
        with self._wrap_errors("transaction"):
            with self.engine.begin() as conn:
                if self._is_postgres:
                    conn.execute(text(f"SET LOCAL statement_timeout = {self._statement_timeout_ms}"))  # noqa: S608
                yield StoreTransaction(conn, self.refresh_ttl)

    @contextmanager
    def _read(self) -> Iterator[StoreTransaction]:
        with self._wrap_errors("read"):
            with self.engine.connect() as conn:
                yield StoreTransaction(conn, self.refresh_ttl)

    @contextmanager
    def _wrap_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.exception("Database error during %s", operation)
            raise StoreUnavailable("A database error occurred.") from exc

    # ------------------------------------------------------------------
    # Plain reads (pooled, no transaction grouping)
    # ------------------------------------------------------------------

    def find_user_by_email(self, email: str) -> User | None:
        with self._read() as tx:
            return tx.find_user_by_email(email)

    def find_user_by_username(self, username: str) -> User | None:
        with self._read() as tx:
            return tx.find_user_by_username(username)

    def find_user_by_id(self, user_id: str) -> User | None:
        with self._read() as tx:
            return tx.find_user_by_id(user_id)

    def get_session(self, jti: str) -> RefreshSession | None:
        with self._read() as tx:
            return tx.get_session(jti)

    def count_active_sessions(self, user_id: str) -> int:
        with self._read() as tx:
            return tx.count_active_sessions(user_id)

    # ------------------------------------------------------------------
    # Single-statement writes (each its own transaction)
    # ------------------------------------------------------------------

    def revoke_session(self, jti: str) -> bool:
        with self.transaction() as tx:
            return tx.revoke_session(jti)

    def revoke_all_sessions(self, user_id: str) -> int:
        with self.transaction() as tx:
            return tx.revoke_all_sessions(user_id)

    def delete_user(self, user_id: str) -> bool:
        with self.transaction() as tx:
            return tx.delete_user(user_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> None:
        """Round-trip a trivial query. Raises StoreUnavailable on failure."""
        with self._read() as tx:
            tx.conn.execute(text("SELECT 1"))

    def close(self) -> None:
        self.engine.dispose()


def connect_with_retry(
    store: CredentialStore,
    attempts: int = 5,
    delay: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Block until the database answers, or exit the process.

    Fixed backoff: `attempts` tries, `delay` seconds apart. Exhausting them is
    fatal -- the service cannot do anything useful without its credential
    store, and a process manager is expected to restart it.
    """
    for attempt in range(1, attempts + 1):
        try:
            store.ping()
        except StoreUnavailable:
            logger.error("Database connection failed (attempt %d/%d)", attempt, attempts)
            if attempt < attempts:
                logger.info("Retrying database connection in %.0f seconds", delay)
                sleep(delay)
            continue
        logger.info("Connected to the database")
        return
    logger.critical("Exhausted all retries. Failed to connect to the database. Exiting.")
    raise SystemExit(1)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        name=row.name,
        role=Role(row.system_role),
        password_hash=row.hashed_password,
        email_verified=bool(row.email_verified),
        profile_image=row.profile_image,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _row_to_session(row) -> RefreshSession:
    return RefreshSession(
        jti=row.jti,
        user_id=row.user_id,
        expires_at=_as_utc(row.expires_at),
        revoked=bool(row.revoked),
        created_at=_as_utc(row.created_at),
    )
