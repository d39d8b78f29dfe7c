"""
tests/test_auth_store.py -- Unit tests for UserStore (auth/store.py).

Uses named shared-memory SQLite stores from the `stores` fixture.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import AuthSource, Role, User
from auth.tokens import hash_password

_NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _user(username: str = "bob", role: Role = Role.editor) -> User:
    return User(username=username, role=role, hashed_password=hash_password("bobpass12"))


class TestSigningSecret:
    def test_generated_once(self, stores) -> None:
        user_store, _ = stores
        first = user_store.ensure_signing_secret()
        assert len(first) == 128
        assert user_store.ensure_signing_secret() == first


class TestUsers:
    def test_create_and_get(self, stores) -> None:
        user_store, _ = stores
        uid = user_store.create_user(_user())
        user = user_store.get_by_username("bob")
        assert user.id == uid
        assert user.role is Role.editor
        assert user.auth_source is AuthSource.local
        assert user.is_active
        assert user.created_at

    def test_duplicate_username(self, stores) -> None:
        user_store, _ = stores
        user_store.create_user(_user())
        with pytest.raises(IntegrityError):
            user_store.create_user(_user())

    def test_lookup_is_case_sensitive(self, stores) -> None:
        user_store, _ = stores
        user_store.create_user(_user())
        assert user_store.get_by_username("BOB") is None

    def test_has_users(self, stores) -> None:
        user_store, _ = stores
        assert not user_store.has_users()
        user_store.create_user(_user())
        assert user_store.has_users()

    def test_list_users_in_creation_order(self, stores) -> None:
        user_store, _ = stores
        for name in ("carol", "alice", "bob"):
            user_store.create_user(_user(name))
        assert [u.username for u in user_store.list_users()] == ["carol", "alice", "bob"]

    def test_set_active(self, stores) -> None:
        user_store, _ = stores
        user_store.create_user(_user())
        assert user_store.set_active("bob", False)
        assert not user_store.get_by_username("bob").is_active
        assert not user_store.set_active("ghost", False)

    def test_update_password(self, stores) -> None:
        user_store, _ = stores
        user_store.create_user(_user())
        assert user_store.update_password("bob", "newhash")
        assert user_store.get_by_username("bob").hashed_password == "newhash"

    def test_delete_user(self, stores) -> None:
        user_store, _ = stores
        user_store.create_user(_user())
        assert user_store.delete_user("bob")
        assert user_store.get_by_username("bob") is None
        assert not user_store.delete_user("bob")


class TestUpsertDirectoryUser:
    def test_inserts_new_user(self, stores) -> None:
        user_store, _ = stores
        user_store.upsert_directory_user("alice", Role.admin)
        user = user_store.get_by_username("alice")
        assert user.role is Role.admin
        assert user.auth_source is AuthSource.ldap
        assert user.hashed_password == ""

    def test_overwrites_role_and_source(self, stores) -> None:
        user_store, _ = stores
        user_store.create_user(_user("alice", Role.admin))
        user_store.upsert_directory_user("alice", Role.editor)
        user = user_store.get_by_username("alice")
        assert user.role is Role.editor
        assert user.auth_source is AuthSource.ldap

    def test_keeps_active_flag(self, stores) -> None:
        user_store, _ = stores
        user_store.upsert_directory_user("alice", Role.editor)
        user_store.set_active("alice", False)
        user_store.upsert_directory_user("alice", Role.admin)
        assert not user_store.get_by_username("alice").is_active

    def test_single_row_after_repeated_logins(self, stores) -> None:
        user_store, _ = stores
        for _ in range(3):
            user_store.upsert_directory_user("alice", Role.editor)
        assert [u.username for u in user_store.list_users()] == ["alice"]


class TestSessions:
    def test_create_get_delete(self, stores) -> None:
        user_store, _ = stores
        user_store.create_session("sig1", "csrf1", "bob", _NOW + timedelta(hours=24))
        session = user_store.get_session("sig1")
        assert session.username == "bob"
        assert session.csrf_token == "csrf1"
        assert session.expires_at == _NOW + timedelta(hours=24)
        user_store.delete_session("sig1")
        assert user_store.get_session("sig1") is None

    def test_duplicate_token_rejected(self, stores) -> None:
        user_store, _ = stores
        user_store.create_session("sig1", "csrf1", "bob", _NOW)
        with pytest.raises(IntegrityError):
            user_store.create_session("sig1", "csrf2", "alice", _NOW)

    def test_delete_user_sessions(self, stores) -> None:
        user_store, _ = stores
        user_store.create_session("sig1", "c", "bob", _NOW)
        user_store.create_session("sig2", "c", "bob", _NOW)
        user_store.create_session("sig3", "c", "alice", _NOW)
        assert user_store.delete_user_sessions("bob") == 2
        assert user_store.get_session("sig3") is not None

    def test_purge_expired_boundary(self, stores) -> None:
        """A session expiring exactly at the cutoff is already expired."""
        user_store, _ = stores
        user_store.create_session("past", "c", "bob", _NOW - timedelta(seconds=1))
        user_store.create_session("edge", "c", "bob", _NOW)
        user_store.create_session("live", "c", "bob", _NOW + timedelta(seconds=1))
        assert user_store.purge_expired_sessions(_NOW) == 2
        assert user_store.get_session("live") is not None
