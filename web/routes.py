"""
web/routes.py -- Jinja2 template routes for the dnsdesk web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same stores, session manager, auth policy).

Every protected route declares its gate chain as a dependency (see
auth/dependencies.py). Mutating routes always include the CSRF gate; the
rendered pages embed the session's CSRF token in a hidden csrf_token field.

Routes:
  GET  /                     -- signed-in landing page (auth required)
  GET  /login                -- login form
  POST /login                -- directory/local login, redirect /
  POST /logout               -- destroy session, redirect /login
  GET  /setup                -- first-run wizard
  POST /setup                -- create first admin
  GET  /account              -- own account page (auth required)
  POST /account/password     -- change own local password (auth + CSRF)
  GET  /admin/users          -- user list (admin)
  POST /admin/users/create   -- create local user (admin + CSRF)
  POST /admin/users/delete   -- delete user (admin + CSRF)
  POST /admin/users/toggle   -- activate/deactivate user (admin + CSRF)
  GET  /admin/audit          -- audit log, 50 per page (admin)
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import IntegrityError

from audit.store import AuditStore
from auth.dependencies import (
    ADMIN,
    ADMIN_MUTATION,
    AUTHENTICATED,
    AUTHENTICATED_MUTATION,
    GateRejected,
    current_session,
    require_csrf,
)
from auth.models import AuthSource, Role, SessionInfo, User
from auth.policy import AuthenticationPolicy, AuthStatus
from auth.session import SessionManager, SessionStoreError
from auth.store import UserStore
from auth.tokens import hash_password, password_too_long, verify_password
from core.limiter import limiter, login_rate_limit
from core.netutil import client_ip

logger = logging.getLogger("dnsdesk.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_MIN_PASSWORD_LENGTH = 8
# Bounds request size only; the bcrypt byte limit is checked where passwords are hashed.
_MAX_FIELD_LENGTH = 255
_AUDIT_PAGE_SIZE = 50

# ---------------------------------------------------------------------------
# Message whitelists
#
# Query params are NEVER rendered directly -- only the message looked up
# from these dicts is. Prevents reflected XSS via crafted query strings.
# ---------------------------------------------------------------------------

_LOGIN_ERRORS: dict[str, str] = {
    "bad_credentials": "Invalid credentials",
    "access_denied": "Access denied: you are not in an authorized group",
    "setup_complete": "Setup already complete. Please log in.",
}

_ADMIN_MESSAGES: dict[str, str] = {
    "user_created": "User created.",
    "user_exists": "A user with that name already exists.",
    "user_invalid": "Username is required and passwords must be at least 8 characters.",
    "password_long": "Password must be at most 72 bytes.",
    "user_deleted": "User deleted.",
    "user_updated": "User updated.",
    "user_not_found": "No such user.",
    "self_forbidden": "You cannot delete or deactivate your own account.",
}

_ACCOUNT_MESSAGES: dict[str, str] = {
    "password_changed": "Password changed. Other sessions have been signed out.",
    "password_mismatch": "New passwords do not match.",
    "password_short": "Password must be at least 8 characters.",
    "password_long": "Password must be at most 72 bytes.",
    "password_wrong": "Current password is incorrect.",
    "directory_managed": "This account is managed by the directory; change the password there.",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _request_ip(request: Request) -> str:
    return client_ip(request.headers, request.client.host if request.client else None)


def _current_user(request: Request, session: SessionInfo) -> User:
    user = request.app.state.user_store.get_by_username(session.username)
    if user is None:
        # Session outlived its user record
        raise GateRejected(RedirectResponse("/login", status_code=303))
    return user


def _page(request: Request, name: str, session: SessionInfo, **context) -> HTMLResponse:
    """Render a signed-in page with the shared layout context."""
    user = _current_user(request, session)
    context.update(
        {
            "username": user.username,
            "role": user.role.value,
            "csrf_token": session.csrf_token,
        }
    )
    return templates.TemplateResponse(request, name, context)


def _audit(request: Request, username: str, action: str, detail: str = "") -> None:
    policy: AuthenticationPolicy = request.app.state.auth_policy
    policy.record(username, action, detail, _request_ip(request))


# ---------------------------------------------------------------------------
# GET / -- landing page
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def index(request: Request, session: SessionInfo = Depends(AUTHENTICATED)) -> HTMLResponse:
    return _page(request, "index.html", session)


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the login page. Signed-in users go straight to /."""
    if current_session(request).valid:
        return RedirectResponse("/", status_code=303)
    error_msg = _LOGIN_ERRORS.get(request.query_params.get("error", ""))
    policy: AuthenticationPolicy = request.app.state.auth_policy
    return templates.TemplateResponse(
        request,
        "login.html",
        {"error_msg": error_msg, "ldap_enabled": policy.directory is not None},
    )


@limiter.limit(login_rate_limit)
@router.post("/login", response_class=HTMLResponse)
def login_post(
    request: Request,
    username: str = Form(..., max_length=255),
    password: str = Form(..., max_length=_MAX_FIELD_LENGTH),
) -> RedirectResponse:
    """Handle the login form. Errors come back as whitelisted ?error= codes."""
    policy: AuthenticationPolicy = request.app.state.auth_policy
    resp = RedirectResponse("/", status_code=303)
    decision = policy.login(resp, username, password, _request_ip(request))
    if decision.status is AuthStatus.access_denied:
        return RedirectResponse("/login?error=access_denied", status_code=303)
    if not decision.ok:
        return RedirectResponse("/login?error=bad_credentials", status_code=303)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/logout")
async def logout(request: Request) -> RedirectResponse:
    """Destroy the session and go back to /login.

    A live session must present its CSRF token; without one this only clears
    a stale cookie.
    """
    if current_session(request).valid:
        rejection = await require_csrf(request)
        if rejection is not None:
            return rejection
    resp = RedirectResponse("/login", status_code=303)
    policy: AuthenticationPolicy = request.app.state.auth_policy
    policy.logout(request, resp, _request_ip(request))
    return resp


# ---------------------------------------------------------------------------
# First-run setup
# ---------------------------------------------------------------------------


@router.get("/setup", response_class=HTMLResponse)
def setup_form(request: Request) -> HTMLResponse:
    """Render the first-run setup wizard. 404 once any user exists."""
    if request.app.state.user_store.has_users():
        raise HTTPException(status_code=404)
    return templates.TemplateResponse(request, "setup.html", {})


@router.post("/setup", response_class=HTMLResponse)
def setup_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(..., max_length=_MAX_FIELD_LENGTH),
    confirm_password: str = Form(...),
) -> HTMLResponse:
    """Create the first admin account.

    Re-checks has_users() at the store: two concurrent submissions can both
    get past the setup redirect, and the unique username plus this check
    ensure only one wins.
    """
    user_store: UserStore = request.app.state.user_store
    if user_store.has_users():
        raise HTTPException(status_code=404)

    error_msg: Optional[str] = None
    if not username.strip():
        error_msg = "Username is required."
    elif len(password) < _MIN_PASSWORD_LENGTH:
        error_msg = "Password must be at least 8 characters."
    elif password_too_long(password):
        error_msg = "Password must be at most 72 bytes."
    elif password != confirm_password:
        error_msg = "Passwords do not match."
    if error_msg:
        return templates.TemplateResponse(request, "setup.html", {"error_msg": error_msg})

    admin = User(username=username.strip(), role=Role.admin, hashed_password=hash_password(password))
    try:
        user_store.create_user(admin)
    except IntegrityError:
        return RedirectResponse("/login?error=setup_complete", status_code=303)
    request.app.state.setup_required = False
    _audit(request, admin.username, "setup", "created first admin")
    logger.info("First admin %r created", admin.username)
    return RedirectResponse("/login", status_code=303)


# ---------------------------------------------------------------------------
# Own account
# ---------------------------------------------------------------------------


@router.get("/account", response_class=HTMLResponse)
def account(request: Request, session: SessionInfo = Depends(AUTHENTICATED)) -> HTMLResponse:
    user = _current_user(request, session)
    message = _ACCOUNT_MESSAGES.get(request.query_params.get("msg", ""))
    return _page(
        request,
        "account.html",
        session,
        message=message,
        directory_managed=user.auth_source is AuthSource.ldap or not user.hashed_password,
    )


@router.post("/account/password")
async def change_password(
    request: Request,
    current_password: str = Form(..., max_length=_MAX_FIELD_LENGTH),
    new_password: str = Form(..., max_length=_MAX_FIELD_LENGTH),
    confirm_password: str = Form(..., max_length=_MAX_FIELD_LENGTH),
    session: SessionInfo = Depends(AUTHENTICATED_MUTATION),
) -> RedirectResponse:
    """Change the signed-in user's local password.

    Every session of the user is revoked and a fresh one issued for this
    browser, so a stolen cookie does not survive a password change.
    """
    user_store: UserStore = request.app.state.user_store
    sessions: SessionManager = request.app.state.session_manager
    user = _current_user(request, session)

    def back(code: str) -> RedirectResponse:
        return RedirectResponse(f"/account?msg={code}", status_code=303)

    if user.auth_source is AuthSource.ldap or not user.hashed_password:
        return back("directory_managed")
    if not verify_password(current_password, user.hashed_password):
        return back("password_wrong")
    if len(new_password) < _MIN_PASSWORD_LENGTH:
        return back("password_short")
    if password_too_long(new_password):
        return back("password_long")
    if new_password != confirm_password:
        return back("password_mismatch")

    user_store.update_password(user.username, hash_password(new_password))
    user_store.delete_user_sessions(user.username)
    _audit(request, user.username, "change_password")

    resp = back("password_changed")
    try:
        sessions.create_session(resp, user.username)
    except SessionStoreError:
        return RedirectResponse("/login", status_code=303)
    return resp


# ---------------------------------------------------------------------------
# Admin: users
# ---------------------------------------------------------------------------


def _admin_redirect(code: str) -> RedirectResponse:
    return RedirectResponse(f"/admin/users?msg={code}", status_code=303)


@router.get("/admin/users", response_class=HTMLResponse)
def admin_users(request: Request, session: SessionInfo = Depends(ADMIN)) -> HTMLResponse:
    user_store: UserStore = request.app.state.user_store
    message = _ADMIN_MESSAGES.get(request.query_params.get("msg", ""))
    return _page(
        request,
        "admin_users.html",
        session,
        users=user_store.list_users(),
        message=message,
        roles=[r.value for r in Role],
    )


@router.post("/admin/users/create")
async def admin_create_user(
    request: Request,
    username: str = Form(...),
    password: str = Form(..., max_length=_MAX_FIELD_LENGTH),
    role: str = Form("editor"),
    session: SessionInfo = Depends(ADMIN_MUTATION),
) -> RedirectResponse:
    user_store: UserStore = request.app.state.user_store
    username = username.strip()
    if not username or len(password) < _MIN_PASSWORD_LENGTH:
        return _admin_redirect("user_invalid")
    if password_too_long(password):
        return _admin_redirect("password_long")
    new_role = Role(role) if role in {r.value for r in Role} else Role.editor
    try:
        user_store.create_user(User(username=username, role=new_role, hashed_password=hash_password(password)))
    except IntegrityError:
        return _admin_redirect("user_exists")
    _audit(request, session.username, "create_user", f"created user={username} role={new_role.value}")
    return _admin_redirect("user_created")


@router.post("/admin/users/delete")
async def admin_delete_user(
    request: Request,
    username: str = Form(...),
    session: SessionInfo = Depends(ADMIN_MUTATION),
) -> RedirectResponse:
    user_store: UserStore = request.app.state.user_store
    if username == session.username:
        return _admin_redirect("self_forbidden")
    if not user_store.delete_user(username):
        return _admin_redirect("user_not_found")
    user_store.delete_user_sessions(username)
    _audit(request, session.username, "delete_user", f"deleted user={username}")
    return _admin_redirect("user_deleted")


@router.post("/admin/users/toggle")
async def admin_toggle_user(
    request: Request,
    username: str = Form(...),
    session: SessionInfo = Depends(ADMIN_MUTATION),
) -> RedirectResponse:
    """Flip a user's active flag. Deactivation revokes their sessions."""
    user_store: UserStore = request.app.state.user_store
    if username == session.username:
        return _admin_redirect("self_forbidden")
    target = user_store.get_by_username(username)
    if target is None:
        return _admin_redirect("user_not_found")
    active = not target.is_active
    user_store.set_active(username, active)
    if not active:
        user_store.delete_user_sessions(username)
    action = "activate_user" if active else "deactivate_user"
    _audit(request, session.username, action, f"user={username}")
    return _admin_redirect("user_updated")


# ---------------------------------------------------------------------------
# Admin: audit log
# ---------------------------------------------------------------------------


@router.get("/admin/audit", response_class=HTMLResponse)
def admin_audit(request: Request, page: int = 1, session: SessionInfo = Depends(ADMIN)) -> HTMLResponse:
    audit_store: AuditStore = request.app.state.audit_store
    page = max(1, page)
    entries, total = audit_store.list_entries(_AUDIT_PAGE_SIZE, (page - 1) * _AUDIT_PAGE_SIZE)
    total_pages = max(1, (total + _AUDIT_PAGE_SIZE - 1) // _AUDIT_PAGE_SIZE)
    return _page(
        request,
        "admin_audit.html",
        session,
        entries=entries,
        page=page,
        total_pages=total_pages,
        total=total,
    )
