"""
tests/conftest.py -- Shared test fixtures for SessionKit.

This module provides:
  - make_store(): an isolated named shared-memory CredentialStore
  - store / codec / hasher / manager / authenticator: unit-test components
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG must be set before any api/core import so get_settings() generates the
signing secrets instead of raising. The auth rate limit is raised so tests
that sign up and log in repeatedly are not throttled.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any api/core import (get_settings() is cached).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("AUTH_RATE_LIMIT", "1000/minute")
os.environ.setdefault("REFRESH_COOKIE_NAME", "test-refresh-token")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_components
from auth.dependencies import RequestAuthenticator
from auth.passwords import PasswordHasher
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenCodec
from core.config import get_settings

ACCESS_SECRET = "a" * 32 + "-access-signing-secret"
REFRESH_SECRET = "r" * 32 + "-refresh-signing-secret"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(refresh_ttl_days: int = 7) -> CredentialStore:
    """Create an isolated named shared-memory store with the schema in place."""
    url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    store = CredentialStore(url, refresh_ttl_days=refresh_ttl_days)
    store.create_schema()
    return store


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(ACCESS_SECRET, 900, REFRESH_SECRET, 7)


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    # Minimum bcrypt cost keeps the suite fast; production uses SALT_ROUNDS.
    return PasswordHasher(rounds=4)


@pytest.fixture
def manager(store: CredentialStore, codec: TokenCodec, hasher: PasswordHasher) -> SessionManager:
    return SessionManager(store, codec, hasher)


@pytest.fixture
def authenticator(codec: TokenCodec, store: CredentialStore) -> RequestAuthenticator:
    return RequestAuthenticator(codec, store)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore):
    """Return a lifespan that wires the real components around a test store."""

    @asynccontextmanager
    async def test_lifespan(app):
        build_components(app, get_settings(), store)
        yield

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, CredentialStore], None, None]:
    """Yield (client, store) for API integration tests.

    Function-scoped so every test starts with an empty database and an empty
    cookie jar.
    """
    s = make_store()
    app.router.lifespan_context = _patch_lifespan(s)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, s
    s.close()
