"""
tests/conftest.py -- Shared test fixtures for dnsdesk integration tests.

This module provides:
  - _make_test_stores(): creates isolated in-memory DBs for users + audit log
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - env: TestClient plus the stores behind it, with one admin and one editor
  - login(): signs a client in through the JSON API and returns the CSRF token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
test gets its own name so sessions and audit entries never leak between
tests.

The client's base_url is http://localhost because TrustedHostMiddleware only
admits the configured hosts.
"""

from __future__ import annotations

import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from asgi import app
from audit.store import AuditStore
from auth.directory import DirectoryClient
from auth.models import Role, User
from auth.policy import AuthenticationPolicy
from auth.session import SessionManager
from auth.store import UserStore
from auth.tokens import hash_password
from core.limiter import limiter

# Login routes are rate limited; tests log in far more often than 10/minute.
limiter.enabled = False

ADMIN_USER = "webadmin"
ADMIN_PASS = "webpass123"
EDITOR_USER = "editor1"
EDITOR_PASS = "editorpass1"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, AuditStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so tests don't share
                   state.
    """
    url = f"sqlite:///file:test_dnsdesk_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=url), AuditStore(db_url=url)


def _patch_lifespan(
    user_store: UserStore,
    audit_store: AuditStore,
    sessions: SessionManager,
    policy: AuthenticationPolicy,
    setup_required: bool = False,
):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.audit_store = audit_store
        app.state.session_manager = sessions
        app.state.auth_policy = policy
        app.state.setup_required = setup_required
        yield

    return test_lifespan


@dataclass
class AppEnv:
    client: TestClient
    user_store: UserStore
    audit_store: AuditStore
    sessions: SessionManager
    policy: AuthenticationPolicy


def make_env(
    directory: Optional[DirectoryClient] = None,
    seed_users: bool = True,
) -> Generator[AppEnv, None, None]:
    """Build stores, seed users, and yield an AppEnv around a started TestClient."""
    user_store, audit_store = _make_test_stores(uuid.uuid4().hex)
    if seed_users:
        user_store.create_user(User(username=ADMIN_USER, role=Role.admin, hashed_password=hash_password(ADMIN_PASS)))
        user_store.create_user(User(username=EDITOR_USER, role=Role.editor, hashed_password=hash_password(EDITOR_PASS)))
    sessions = SessionManager(user_store, user_store.ensure_signing_secret())
    policy = AuthenticationPolicy(user_store, sessions, audit_store, directory=directory)

    app.router.lifespan_context = _patch_lifespan(
        user_store, audit_store, sessions, policy, setup_required=not seed_users
    )
    with TestClient(app, base_url="http://localhost", follow_redirects=False) as client:
        yield AppEnv(client, user_store, audit_store, sessions, policy)

    audit_store.close()
    user_store.close()


def login(client: TestClient, username: str, password: str) -> str:
    """Sign in through the JSON API. The client keeps the cookie; returns the CSRF token."""
    resp = client.post("/api/v1/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["csrf_token"]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def env() -> Generator[AppEnv, None, None]:
    """Yield an AppEnv with an admin and an editor account and no directory.

    follow_redirects=False is essential for web route tests: we assert on
    redirect *locations* (e.g. 303 to /login), which are invisible once the
    client follows the redirect.
    """
    yield from make_env()


@pytest.fixture()
def empty_env() -> Generator[AppEnv, None, None]:
    """Yield an AppEnv with no users (first-run state)."""
    yield from make_env(seed_users=False)


@pytest.fixture()
def stores() -> Generator[tuple[UserStore, AuditStore], None, None]:
    """Yield bare (UserStore, AuditStore) for unit tests that need no HTTP client."""
    user_store, audit_store = _make_test_stores(uuid.uuid4().hex)
    yield user_store, audit_store
    audit_store.close()
    user_store.close()
