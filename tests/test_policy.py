"""
tests/test_policy.py -- Unit tests for auth/policy.py.

AuthenticationPolicy runs against real in-memory stores and a real
DirectoryClient wired to a FakeConnection, so the directory/local
arbitration is tested end to end below the HTTP layer.

Coverage:
  - Local-only mode: success, wrong password, inactive user
  - Directory mode: provisioning, role overwrite on every login, no mapped
    group -> ACCESS_DENIED without falling through to local auth
  - Directory errors fall through to local auth, but only for local admins
  - login(): session issued, audit entry written, store failure rejects
"""

from __future__ import annotations

import pytest
from ldap3.core.exceptions import LDAPSocketOpenError
from sqlalchemy.exc import OperationalError
from starlette.responses import Response

from auth.directory import DirectoryClient
from auth.models import AuthSource, Role, User
from auth.policy import AuthenticationPolicy, AuthStatus
from auth.session import SessionManager
from auth.tokens import hash_password
from ldap_fakes import ADMINS_DN, ALICE_DN, EDITORS_DN, FakeConnection, directory_settings, user_entry


def _directory(conn: FakeConnection) -> DirectoryClient:
    return DirectoryClient(directory_settings(), connection_factory=lambda: conn)


def _alice(groups) -> FakeConnection:
    return FakeConnection(users=[user_entry(member_of=groups)], passwords={ALICE_DN: "alicepw"})


@pytest.fixture()
def seeded(stores):
    user_store, audit_store = stores
    user_store.create_user(User(username="root", role=Role.admin, hashed_password=hash_password("rootpass1")))
    user_store.create_user(User(username="bob", role=Role.editor, hashed_password=hash_password("bobpass12")))
    return user_store, audit_store


def _policy(seeded, directory=None) -> AuthenticationPolicy:
    user_store, audit_store = seeded
    sessions = SessionManager(user_store, "test-secret")
    return AuthenticationPolicy(user_store, sessions, audit_store, directory=directory)


class TestLocalOnly:
    def test_local_editor_succeeds_without_directory(self, seeded) -> None:
        decision = _policy(seeded).authenticate("bob", "bobpass12")
        assert decision.ok
        assert decision.method == AuthSource.local
        assert decision.user.role == Role.editor

    def test_wrong_password(self, seeded) -> None:
        decision = _policy(seeded).authenticate("bob", "nope")
        assert decision.status is AuthStatus.invalid_credentials
        assert decision.user is None

    def test_unknown_user(self, seeded) -> None:
        assert _policy(seeded).authenticate("ghost", "x").status is AuthStatus.invalid_credentials

    def test_inactive_user(self, seeded) -> None:
        user_store, _ = seeded
        user_store.set_active("bob", False)
        assert not _policy(seeded).authenticate("bob", "bobpass12").ok


class TestDirectory:
    def test_directory_user_is_provisioned(self, seeded) -> None:
        user_store, _ = seeded
        decision = _policy(seeded, _directory(_alice([EDITORS_DN]))).authenticate("alice", "alicepw")
        assert decision.ok
        assert decision.method == AuthSource.ldap
        stored = user_store.get_by_username("alice")
        assert stored.role == Role.editor
        assert stored.auth_source == AuthSource.ldap
        assert stored.hashed_password == ""

    def test_role_overwritten_on_every_login(self, seeded) -> None:
        user_store, _ = seeded
        _policy(seeded, _directory(_alice([ADMINS_DN]))).authenticate("alice", "alicepw")
        assert user_store.get_by_username("alice").role == Role.admin

        _policy(seeded, _directory(_alice([EDITORS_DN]))).authenticate("alice", "alicepw")
        assert user_store.get_by_username("alice").role == Role.editor

    def test_local_account_converted_to_directory(self, seeded) -> None:
        """A same-named local user is taken over by the directory on login."""
        user_store, _ = seeded
        conn = FakeConnection(
            users=[user_entry(dn="uid=bob,ou=people,dc=example,dc=com", uid="bob", member_of=[ADMINS_DN])],
            passwords={"uid=bob,ou=people,dc=example,dc=com": "dirpass"},
        )
        decision = _policy(seeded, _directory(conn)).authenticate("bob", "dirpass")
        assert decision.ok
        stored = user_store.get_by_username("bob")
        assert stored.role == Role.admin
        assert stored.auth_source == AuthSource.ldap

    def test_no_mapped_group_is_access_denied(self, seeded) -> None:
        user_store, _ = seeded
        conn = _alice(["cn=staff,ou=groups,dc=example,dc=com"])
        decision = _policy(seeded, _directory(conn)).authenticate("alice", "alicepw")
        assert decision.status is AuthStatus.access_denied
        assert user_store.get_by_username("alice") is None

    def test_access_denied_does_not_fall_through_to_local(self, seeded) -> None:
        """Proven directory password without a group must not be rescued by a local account."""
        conn = FakeConnection(
            users=[user_entry(dn="uid=root,ou=people,dc=example,dc=com", uid="root", member_of=[])],
            passwords={"uid=root,ou=people,dc=example,dc=com": "rootpass1"},
        )
        decision = _policy(seeded, _directory(conn)).authenticate("root", "rootpass1")
        assert decision.status is AuthStatus.access_denied

    def test_deactivated_directory_user_rejected(self, seeded) -> None:
        user_store, _ = seeded
        policy = _policy(seeded, _directory(_alice([EDITORS_DN])))
        assert policy.authenticate("alice", "alicepw").ok
        user_store.set_active("alice", False)
        policy = _policy(seeded, _directory(_alice([EDITORS_DN])))
        assert policy.authenticate("alice", "alicepw").status is AuthStatus.invalid_credentials


class TestLocalFallback:
    def test_unreachable_directory_allows_local_admin(self, seeded) -> None:
        conn = FakeConnection(open_error=LDAPSocketOpenError("unreachable"))
        decision = _policy(seeded, _directory(conn)).authenticate("root", "rootpass1")
        assert decision.ok
        assert decision.method == AuthSource.local

    def test_multi_marker_user_filter_still_allows_local_admin(self, seeded) -> None:
        conn = FakeConnection(users=[])
        directory = DirectoryClient(
            directory_settings(user_filter="(|(uid=%s)(mail=%s))"),
            connection_factory=lambda: conn,
        )
        decision = _policy(seeded, directory).login(Response(), "root", "rootpass1", "")
        assert decision.ok
        assert decision.method == AuthSource.local

    def test_local_editor_locked_out_when_directory_enabled(self, seeded) -> None:
        conn = FakeConnection(users=[])
        decision = _policy(seeded, _directory(conn)).authenticate("bob", "bobpass12")
        assert decision.status is AuthStatus.invalid_credentials

    def test_directory_wrong_password_and_no_local_user(self, seeded) -> None:
        decision = _policy(seeded, _directory(_alice([EDITORS_DN]))).authenticate("alice", "wrong")
        assert decision.status is AuthStatus.invalid_credentials

    def test_directory_user_cannot_use_empty_local_password(self, seeded) -> None:
        policy = _policy(seeded, _directory(_alice([EDITORS_DN])))
        assert policy.authenticate("alice", "alicepw").ok
        outage = _policy(seeded, _directory(FakeConnection(open_error=LDAPSocketOpenError("down"))))
        assert not outage.authenticate("alice", "").ok


class TestLogin:
    def test_success_sets_cookie_and_audits(self, seeded) -> None:
        _, audit_store = seeded
        response = Response()
        decision = _policy(seeded).login(response, "root", "rootpass1", "10.0.0.5")
        assert decision.ok
        assert decision.csrf_token
        assert any(k == b"set-cookie" for k, _ in response.raw_headers)

        entries, total = audit_store.list_entries(10, 0)
        assert total == 1
        assert entries[0].username == "root"
        assert entries[0].action == "login"
        assert entries[0].detail == "auth=local"
        assert entries[0].ip_address == "10.0.0.5"

    def test_failure_sets_no_cookie(self, seeded) -> None:
        response = Response()
        decision = _policy(seeded).login(response, "root", "wrong", "10.0.0.5")
        assert not decision.ok
        assert not any(k == b"set-cookie" for k, _ in response.raw_headers)

    def test_session_store_failure_rejects_login(self, seeded, monkeypatch) -> None:
        user_store, audit_store = seeded
        policy = _policy(seeded)

        def broken(*args, **kwargs):
            raise OperationalError("INSERT INTO sessions", {}, Exception("database is locked"))

        monkeypatch.setattr(user_store, "create_session", broken)
        response = Response()
        decision = policy.login(response, "root", "rootpass1", "10.0.0.5")
        assert decision.status is AuthStatus.invalid_credentials
        assert not any(k == b"set-cookie" for k, _ in response.raw_headers)
        assert audit_store.list_entries(10, 0)[1] == 0

    def test_audit_failure_does_not_block_login(self, seeded, monkeypatch) -> None:
        _, audit_store = seeded

        def broken(entry):
            raise OperationalError("INSERT INTO audit_log", {}, Exception("disk full"))

        monkeypatch.setattr(audit_store, "log", broken)
        assert _policy(seeded).login(Response(), "root", "rootpass1", "").ok

    def test_directory_login_audit_detail(self, seeded) -> None:
        _, audit_store = seeded
        _policy(seeded, _directory(_alice([EDITORS_DN]))).login(Response(), "alice", "alicepw", "")
        entries, _ = audit_store.list_entries(10, 0)
        assert entries[0].detail == "auth=ldap"
