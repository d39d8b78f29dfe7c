"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, the session manager, and the policy do the work.

Role and AuthSource are closed enumerations from the storage boundary inward.
Only the template layer renders them as plain strings.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    admin = "admin"
    editor = "editor"


class AuthSource(str, Enum):
    local = "local"
    ldap = "ldap"


@dataclass
class User:
    """An operator account.

    hashed_password is "" for directory-managed users: they have no local
    password and can only sign in through the directory. auth_source records
    the path that last provisioned or updated the record.
    """

    username: str
    role: Role
    id: int | None = None
    hashed_password: str = ""
    is_active: bool = True
    auth_source: AuthSource = AuthSource.local
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """A stored session. token is the signed value carried in the cookie."""

    token: str
    csrf_token: str
    username: str
    expires_at: datetime


@dataclass
class SessionInfo:
    """Result of resolving the session cookie on a request."""

    username: str = ""
    csrf_token: str = ""
    valid: bool = False


@dataclass
class DirectoryResult:
    """Transient result of one successful directory authentication."""

    username: str
    email: str = ""
    groups: list[str] = field(default_factory=list)
