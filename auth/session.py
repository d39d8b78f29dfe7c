"""
auth/session.py -- Cookie-based session protocol.

The cookie carries sign(secret, raw_token). The raw token is never persisted
or sent anywhere; the signed value is the sessions table primary key. Each
session also gets an independent CSRF token that the rendered page echoes
back on state-changing requests (see auth/dependencies.py).

Sessions have a fixed absolute lifetime of 24 hours. Reads never extend it.
Expiry is enforced lazily on every read and opportunistically purged once at
startup.

The signing secret is injected by the caller (api/main.py lifespan reads it
from UserStore.ensure_signing_secret()). There is no module-level secret.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request
from starlette.responses import Response

from auth.models import SessionInfo
from auth.store import UserStore
from auth.tokens import generate_token, sign

logger = logging.getLogger("dnsdesk.auth")

COOKIE_NAME = "dnsdesk_session"
SESSION_LIFETIME = timedelta(hours=24)


class SessionStoreError(Exception):
    """The session could not be persisted; no cookie was issued."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Issue, resolve, and revoke cookie sessions.

    Args:
        store:          Credential store holding session records.
        secret:         Process-wide signing secret.
        secure_cookies: Add the Secure flag to the session cookie.
        clock:          Returns the current aware UTC time. Injectable for tests.
    """

    def __init__(
        self,
        store: UserStore,
        secret: str,
        secure_cookies: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret:
            raise ValueError("SessionManager requires a non-empty signing secret.")
        self.store = store
        self._secret = secret
        self._secure = secure_cookies
        self._clock = clock

    def sign(self, token: str) -> str:
        return sign(self._secret, token)

    def create_session(self, response: Response, username: str) -> str:
        """Persist a new session for username and set the session cookie.

        Returns the session's CSRF token for embedding in the rendered page.
        Raises SessionStoreError (and sets no cookie) if the store write fails:
        a cookie the store does not know about would just bounce the user back
        to the login page on the next request.
        """
        token = generate_token()
        csrf_token = generate_token()
        signed = self.sign(token)
        expires_at = self._clock() + SESSION_LIFETIME

        try:
            self.store.create_session(signed, csrf_token, username, expires_at)
        except SQLAlchemyError as exc:
            logger.error("Failed to persist session for %r: %s", username, exc)
            raise SessionStoreError("session could not be stored") from exc

        response.set_cookie(
            COOKIE_NAME,
            value=signed,
            max_age=int(SESSION_LIFETIME.total_seconds()),
            path="/",
            httponly=True,
            samesite="strict",
            secure=self._secure,
        )
        return csrf_token

    def destroy_session(self, request: Request, response: Response) -> None:
        """Delete the session record (best-effort) and expire the cookie.

        Idempotent: with no cookie present this only clears the cookie.
        """
        signed = request.cookies.get(COOKIE_NAME)
        if signed:
            try:
                self.store.delete_session(signed)
            except SQLAlchemyError as exc:
                logger.warning("Failed to delete session record: %s", exc)
        response.delete_cookie(
            COOKIE_NAME,
            path="/",
            httponly=True,
            samesite="strict",
            secure=self._secure,
        )

    def get_session_info(self, request: Request) -> SessionInfo:
        """Resolve the session cookie into (username, csrf_token, valid).

        Invalid when the cookie is missing, the store has no record (or the
        lookup fails), the stored username is empty, or now >= expires_at.
        """
        signed = request.cookies.get(COOKIE_NAME)
        if not signed:
            return SessionInfo()
        try:
            session = self.store.get_session(signed)
        except SQLAlchemyError as exc:
            logger.warning("Session lookup failed: %s", exc)
            return SessionInfo()
        if session is None or not session.username:
            return SessionInfo()
        if self._clock() >= session.expires_at:
            return SessionInfo()
        return SessionInfo(username=session.username, csrf_token=session.csrf_token, valid=True)

    def get_username(self, request: Request) -> str | None:
        info = self.get_session_info(request)
        return info.username if info.valid else None

    def purge_expired(self) -> int:
        """Best-effort sweep of expired session rows. Returns rows removed (0 on failure)."""
        try:
            return self.store.purge_expired_sessions(self._clock())
        except SQLAlchemyError as exc:
            logger.warning("Expired session purge failed: %s", exc)
            return 0
