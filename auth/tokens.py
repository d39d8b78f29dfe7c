"""
auth/tokens.py -- Session token signing, password hashing, local password check.

Security design decisions:
  Session tokens: secrets.token_hex(32) gives 256 bits of entropy. The cookie
       carries HMAC-SHA256(secret, raw_token), never the raw token. The signed
       value is also the primary key in the sessions table, so a leaked copy
       of the store alone cannot be turned into a forged cookie without the
       signing secret.

  CSRF tokens: generated with the same generate_token() and compared with
       hmac.compare_digest so comparison time does not depend on how many
       leading characters match.

  Passwords: bcrypt, used directly (no passlib wrapper). The _DUMMY_HASH
       constant enables timing equalization in authenticate_user() so response
       time does not reveal whether a username exists.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

TOKEN_BYTES = 32

# bcrypt rejects (or silently truncates, depending on version) anything longer.
PASSWORD_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Return 32 cryptographically random bytes as 64 hex characters."""
    return secrets.token_hex(TOKEN_BYTES)


def sign(secret: str, token: str) -> str:
    """Return HMAC-SHA256(secret, token) as a hex string."""
    return hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def tokens_match(expected: str, submitted: str) -> bool:
    """Constant-time equality for token strings. Empty values never match."""
    if not expected or not submitted:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), submitted.encode("utf-8"))


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def password_too_long(plain: str) -> bool:
    """True when plain exceeds bcrypt's input limit once UTF-8 encoded."""
    return len(plain.encode("utf-8")) > PASSWORD_MAX_BYTES


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers must reject passwords where password_too_long() is True first;
    bcrypt raises ValueError for them.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the store
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("dnsdesk_timing_dummy")


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Check a local username/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username or directory-managed user (empty hash): bcrypt runs
      against _DUMMY_HASH (same cost as a real check)
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure. Inactive users fail.
    """
    user = store.get_by_username(username)
    if user is None or not user.hashed_password:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user
