"""
auth/policy.py -- Login decision procedure.

Arbitrates between directory authentication and the local password store.
First success wins:

  1. Directory (when configured). A proven password with no mapped group is
     ACCESS_DENIED and does NOT fall through to local auth. A mapped user is
     upserted with auth_source='ldap' and the directory's role, overwriting
     whatever was stored -- the directory is the source of truth on every
     login.
  2. Local password. With a directory configured, only local admins may sign
     in this way; every other account must go through the directory.
  3. Otherwise INVALID_CREDENTIALS.

Outcomes are deliberately coarse. Directory transport errors, service bind
failures, unknown or ambiguous users, wrong passwords, locked-out local
accounts, and store failures all become INVALID_CREDENTIALS. The detail is
logged server-side only.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request
from starlette.responses import Response

from audit.models import AuditEntry
from audit.store import AuditStore
from auth.directory import DirectoryClient, DirectoryError
from auth.models import AuthSource, Role, User
from auth.session import SessionManager, SessionStoreError
from auth.store import UserStore
from auth.tokens import authenticate_user

logger = logging.getLogger("dnsdesk.auth")


class AuthStatus(str, Enum):
    success = "success"
    invalid_credentials = "invalid_credentials"
    access_denied = "access_denied"


@dataclass
class AuthDecision:
    status: AuthStatus
    user: Optional[User] = None
    method: Optional[AuthSource] = None
    csrf_token: str = ""

    @property
    def ok(self) -> bool:
        return self.status is AuthStatus.success


def _invalid() -> AuthDecision:
    return AuthDecision(AuthStatus.invalid_credentials)


class AuthenticationPolicy:
    """Compose the directory client, the credential store, and the session manager.

    directory is None when LDAP is disabled.
    """

    def __init__(
        self,
        store: UserStore,
        sessions: SessionManager,
        audit: AuditStore,
        directory: Optional[DirectoryClient] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.audit = audit
        self.directory = directory

    def authenticate(self, username: str, password: str) -> AuthDecision:
        """Decide whether username/password may sign in, and as whom."""
        if self.directory is not None:
            decision = self._authenticate_directory(username, password)
            if decision is not None:
                return decision

        user = authenticate_user(self.store, username, password)
        if user is None:
            return _invalid()
        if self.directory is not None and user.role != Role.admin:
            logger.info("Local login refused for non-admin %r: directory auth is enabled", username)
            return _invalid()
        return AuthDecision(AuthStatus.success, user=user, method=AuthSource.local)

    def _authenticate_directory(self, username: str, password: str) -> Optional[AuthDecision]:
        """Return a final decision, or None to fall through to local auth."""
        try:
            result = self.directory.authenticate(username, password)
        except DirectoryError as exc:
            logger.info("Directory authentication failed for %r: %s", username, exc)
            return None

        role = self.directory.resolve_role(result.groups)
        if role is None:
            logger.warning("Directory user %r is not in any mapped group", result.username)
            return AuthDecision(AuthStatus.access_denied)

        try:
            self.store.upsert_directory_user(result.username, role)
            user = self.store.get_by_username(result.username)
        except SQLAlchemyError as exc:
            logger.error("Failed to provision directory user %r: %s", result.username, exc)
            return _invalid()
        if user is None:
            return _invalid()
        if not user.is_active:
            logger.info("Directory user %r is deactivated locally", result.username)
            return _invalid()
        return AuthDecision(AuthStatus.success, user=user, method=AuthSource.ldap)

    def login(self, response: Response, username: str, password: str, ip_address: str) -> AuthDecision:
        """Authenticate and, on success, issue the session cookie and audit the login."""
        decision = self.authenticate(username, password)
        if not decision.ok:
            return decision

        try:
            decision.csrf_token = self.sessions.create_session(response, decision.user.username)
        except SessionStoreError:
            return _invalid()

        self.record(decision.user.username, "login", f"auth={decision.method.value}", ip_address)
        logger.info("User %r signed in (auth=%s)", decision.user.username, decision.method.value)
        return decision

    def logout(self, request: Request, response: Response, ip_address: str) -> None:
        username = self.sessions.get_username(request)
        self.sessions.destroy_session(request, response)
        if username:
            self.record(username, "logout", "", ip_address)

    def record(self, username: str, action: str, detail: str, ip_address: str) -> None:
        """Write an audit entry. Failures are logged, never raised."""
        try:
            self.audit.log(AuditEntry(username=username, action=action, detail=detail, ip_address=ip_address))
        except SQLAlchemyError as exc:
            logger.error("Failed to write audit entry %r for %r: %s", action, username, exc)
