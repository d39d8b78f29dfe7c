"""
core/netutil.py -- Client address resolution for audit records.

The app normally runs behind an ingress or reverse proxy, so the socket peer
is the proxy. The first X-Forwarded-For hop is the original client; X-Real-IP
is the common single-value alternative.

These values are client-controlled and are used for audit display only,
never for access decisions.
"""

from collections.abc import Mapping
from typing import Optional


def client_ip(headers: Mapping[str, str], fallback: Optional[str]) -> str:
    """Return the best-effort client IP for a request."""
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return fallback or "unknown"
