"""
api/routes/v1/auth.py -- JSON authentication endpoints.

Routes:
  POST /api/v1/auth/login   -- directory/local login; sets session cookie, returns CSRF token
  POST /api/v1/auth/logout  -- destroys the session; CSRF-checked when a session exists
  GET  /api/v1/auth/me      -- current user and the session's CSRF token (requires auth)

These serve script and single-page clients that echo the CSRF token in the
X-CSRF-Token header instead of a form field. The session cookie is the same
one the web UI uses.

Security:
  POST /login is rate-limited per client address (core.limiter).
  Failure responses never say which factor failed: unknown user, wrong
  password, unreachable directory, and locked-out local accounts all return
  the same bad_credentials error. Only "password right, no mapped group"
  gets its own access_denied code.
  Cache-Control: no-store on login responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import LoginRequest, LoginResponse, MeResponse
from auth.dependencies import AUTHENTICATED, GateRejected, current_session, require_csrf
from auth.models import SessionInfo
from auth.policy import AuthenticationPolicy, AuthStatus
from auth.store import UserStore
from core.limiter import limiter, login_rate_limit
from core.netutil import client_ip

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store"}


def _request_ip(request: Request) -> str:
    return client_ip(request.headers, request.client.host if request.client else None)


@limiter.limit(login_rate_limit)
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest, response: Response) -> LoginResponse:
    """Authenticate and start a session.

    The session cookie is written onto the injected response; FastAPI merges
    it into the serialized LoginResponse.
    """
    policy: AuthenticationPolicy = request.app.state.auth_policy
    decision = policy.login(response, body.username, body.password, _request_ip(request))

    if decision.status is AuthStatus.access_denied:
        raise HTTPException(
            status_code=403,
            detail={"code": "access_denied", "message": "Access denied: you are not in an authorized group."},
            headers=_NO_STORE,
        )
    if not decision.ok:
        raise HTTPException(
            status_code=401,
            detail={"code": "bad_credentials", "message": "Invalid credentials."},
            headers=_NO_STORE,
        )

    response.headers["Cache-Control"] = "no-store"
    return LoginResponse(
        username=decision.user.username,
        role=decision.user.role,
        auth_method=decision.method,
        csrf_token=decision.csrf_token,
    )


@router.post("/auth/logout")
async def logout(request: Request, response: Response) -> dict:
    """End the current session.

    With a live session the CSRF token is required, so a third-party page
    cannot sign the user out. Without one this just clears any stale cookie.
    """
    if current_session(request).valid:
        rejection = await require_csrf(request)
        if rejection is not None:
            raise GateRejected(rejection)
    policy: AuthenticationPolicy = request.app.state.auth_policy
    policy.logout(request, response, _request_ip(request))
    return {"message": "Logged out."}


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, session: SessionInfo = Depends(AUTHENTICATED)) -> MeResponse:
    """Return the signed-in user and the CSRF token for header-based clients."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_username(session.username)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return MeResponse(
        username=user.username,
        role=user.role,
        auth_source=user.auth_source,
        csrf_token=session.csrf_token,
    )
