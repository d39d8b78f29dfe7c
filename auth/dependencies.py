"""
auth/dependencies.py -- Request gates (interceptors) and their FastAPI wiring.

A gate is an async callable taking the Request and returning None to let the
request through, or a Response to short-circuit it. Gates are composed into
an ordered GateChain, and a chain is attached to a route as a dependency:

    @router.post("/admin/users/delete")
    async def delete_user(request: Request, session: SessionInfo = Depends(ADMIN_MUTATION)): ...

When a gate short-circuits, the chain raises GateRejected carrying the gate's
response; api/main.py registers an exception handler that returns it as-is.
Each gate can be exercised on its own, and the order of the standard chains
below (session -> CSRF -> admin) is explicit data rather than nesting.

The resolved SessionInfo is cached on request.state.session so the session
cookie is looked up once per request no matter how many gates run.

Browser routes get a 303 redirect to /login on a missing session. Routes
under /api/ get a JSON 401 instead, since no browser is navigating there.

Layer rule: no imports from api/ or web/.
"""

from collections.abc import Awaitable, Callable
from typing import Optional

from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response

from auth.models import Role, SessionInfo
from auth.tokens import tokens_match

Gate = Callable[[Request], Awaitable[Optional[Response]]]

CSRF_FORM_FIELD = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"
MUTATING_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})
LOGIN_PATH = "/login"


class GateRejected(Exception):
    """Raised by a GateChain when a gate short-circuits the request."""

    def __init__(self, response: Response) -> None:
        super().__init__(response.status_code)
        self.response = response


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def current_session(request: Request) -> SessionInfo:
    """Return the request's SessionInfo, resolving the cookie at most once."""
    info: Optional[SessionInfo] = getattr(request.state, "session", None)
    if info is None:
        info = request.app.state.session_manager.get_session_info(request)
        request.state.session = info
    return info


def _is_api(request: Request) -> bool:
    return request.url.path.startswith("/api/")


def _login_required(request: Request) -> Response:
    if _is_api(request):
        return JSONResponse(
            status_code=401,
            content={"error": {"code": "unauthorized", "message": "Authentication required."}},
        )
    return RedirectResponse(LOGIN_PATH, status_code=303)


def _forbidden(request: Request, message: str) -> Response:
    if _is_api(request):
        return JSONResponse(status_code=403, content={"error": {"code": "forbidden", "message": message}})
    return PlainTextResponse(message, status_code=403)


async def _submitted_csrf_token(request: Request) -> str:
    """Read the CSRF token from the form body, falling back to the header.

    request.form() only parses urlencoded/multipart bodies and caches the
    result, so route handlers declaring Form() fields still see the data.
    """
    form = await request.form()
    submitted = form.get(CSRF_FORM_FIELD)
    if isinstance(submitted, str) and submitted:
        return submitted
    return request.headers.get(CSRF_HEADER, "")


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


async def require_session(request: Request) -> Optional[Response]:
    """Authentication gate: a valid session is required."""
    if not current_session(request).valid:
        return _login_required(request)
    return None


async def require_csrf(request: Request) -> Optional[Response]:
    """CSRF gate: state-changing methods must echo the session's CSRF token.

    GET, HEAD and OPTIONS pass untouched.
    """
    if request.method not in MUTATING_METHODS:
        return None
    info = current_session(request)
    if not info.valid:
        return _forbidden(request, "Forbidden: no session")
    submitted = await _submitted_csrf_token(request)
    if not tokens_match(info.csrf_token, submitted):
        return _forbidden(request, "Forbidden: invalid CSRF token")
    return None


async def require_admin(request: Request) -> Optional[Response]:
    """Admin gate: a valid session whose user record has the admin role.

    Directory and local users are treated the same once resolved.
    """
    info = current_session(request)
    if not info.valid:
        return _login_required(request)
    user = request.app.state.user_store.get_by_username(info.username)
    if user is None or user.role != Role.admin:
        return _forbidden(request, "Forbidden")
    return None


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


class GateChain:
    """An ordered list of gates usable as a FastAPI dependency.

    Returns the request's SessionInfo when every gate passes.
    """

    def __init__(self, *gates: Gate) -> None:
        self.gates: tuple[Gate, ...] = gates

    async def check(self, request: Request) -> Optional[Response]:
        """Run the gates in order; return the first short-circuit response, if any."""
        for gate in self.gates:
            rejection = await gate(request)
            if rejection is not None:
                return rejection
        return None

    async def __call__(self, request: Request) -> SessionInfo:
        rejection = await self.check(request)
        if rejection is not None:
            raise GateRejected(rejection)
        return current_session(request)


AUTHENTICATED = GateChain(require_session)
AUTHENTICATED_MUTATION = GateChain(require_session, require_csrf)
ADMIN = GateChain(require_session, require_admin)
ADMIN_MUTATION = GateChain(require_session, require_csrf, require_admin)
