"""Unit tests for main.py -- operator commands.

Covers:
- create-admin creates a SUPER_ADMIN with a usable bcrypt hash
- create-admin rejects short passwords and duplicate accounts
- sessions / revoke-all report and revoke by email
- unknown email exits non-zero
- email arguments are trimmed and lower-cased like API input
"""

from __future__ import annotations

import pytest

import main as cli
from auth.models import Role
from auth.passwords import PasswordHasher
from auth.store import CredentialStore


@pytest.fixture
def cli_store(store: CredentialStore, monkeypatch) -> CredentialStore:
    """Route the CLI at the test store and keep it open after main() returns."""
    monkeypatch.setattr(cli, "_open_store", lambda: store)
    monkeypatch.setattr(store, "close", lambda: None)
    return store


def test_create_admin(cli_store: CredentialStore, monkeypatch, capsys):
    monkeypatch.setenv("ADMIN_PASSWORD", "AdminSecret1!")
    code = cli.main(["create-admin", "--email", "root@example.com", "--username", "root"])
    assert code == 0
    user = cli_store.find_user_by_email("root@example.com")
    assert user.role is Role.SUPER_ADMIN
    assert user.name == "Administrator"
    assert PasswordHasher().compare("AdminSecret1!", user.password_hash)
    assert "Created SUPER_ADMIN root" in capsys.readouterr().out


def test_create_admin_short_password(cli_store: CredentialStore, monkeypatch):
    monkeypatch.setenv("ADMIN_PASSWORD", "short")
    assert cli.main(["create-admin", "--email", "root@example.com", "--username", "root"]) == 2
    assert cli_store.find_user_by_email("root@example.com") is None


def test_create_admin_duplicate(cli_store: CredentialStore, monkeypatch, capsys):
    monkeypatch.setenv("ADMIN_PASSWORD", "AdminSecret1!")
    cli.main(["create-admin", "--email", "root@example.com", "--username", "root"])
    code = cli.main(["create-admin", "--email", "root@example.com", "--username", "root2"])
    assert code == 1
    assert "already exists" in capsys.readouterr().out


def test_sessions_and_revoke_all(cli_store: CredentialStore, capsys):
    with cli_store.transaction() as tx:
        user = tx.create_user("ada@example.com", "ada", None, "Ada")
        tx.create_session(user.id)
        tx.create_session(user.id)

    assert cli.main(["sessions", "ada@example.com"]) == 0
    assert "2 active session(s)" in capsys.readouterr().out

    assert cli.main(["revoke-all", "ada@example.com"]) == 0
    assert "Revoked 2 session(s)" in capsys.readouterr().out
    assert cli_store.count_active_sessions(user.id) == 0


def test_unknown_email(cli_store: CredentialStore, capsys):
    assert cli.main(["sessions", "ghost@example.com"]) == 1
    assert "No account" in capsys.readouterr().out


def test_mixed_case_email_is_normalized(cli_store: CredentialStore, monkeypatch):
    """The CLI stores and looks up emails the way the API request models do."""
    monkeypatch.setenv("ADMIN_PASSWORD", "AdminSecret1!")
    assert cli.main(["create-admin", "--email", " Root@Example.com ", "--username", "root"]) == 0
    user = cli_store.find_user_by_email("root@example.com")
    assert user is not None
    assert user.role is Role.SUPER_ADMIN

    with cli_store.transaction() as tx:
        tx.create_session(user.id)
    assert cli.main(["sessions", "ROOT@example.com"]) == 0
    assert cli.main(["revoke-all", "Root@EXAMPLE.com"]) == 0
    assert cli_store.count_active_sessions(user.id) == 0


def test_created_admin_can_log_in_through_api(api_client, monkeypatch):
    client, store = api_client
    monkeypatch.setattr(cli, "_open_store", lambda: store)
    monkeypatch.setattr(store, "close", lambda: None)
    monkeypatch.setenv("ADMIN_PASSWORD", "AdminSecret1!")
    assert cli.main(["create-admin", "--email", "Root@Example.com", "--username", "root"]) == 0

    resp = client.post("/api/v1/auth/login", json={"email": "Root@Example.com", "password": "AdminSecret1!"})
    assert resp.status_code == 200
    assert resp.json()["user"]["role"] == "SUPER_ADMIN"
