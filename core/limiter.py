"""
core/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in both login routes
(api/routes/v1/auth.py and web/routes.py) to apply per-route limits with
@limiter.limit(). It lives in core/ because api/ and web/ must not import
each other.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Per-address login attempt limit, read lazily from Settings.

    Each login may cost a directory round trip, so this also bounds how hard
    a single client can push the directory service.
    """
    return get_settings().login_rate_limit
