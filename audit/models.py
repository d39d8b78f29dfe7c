"""
audit/models.py -- Domain dataclass for audit log entries.

Pure data container with zero logic. Persistence lives in audit/store.py.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class AuditEntry:
    """One operator action.

    action is a short verb ("login", "logout", "create_user", ...). detail
    carries free-form context such as "auth=ldap" or "deleted user=bob".
    id and created_at are None before the record is written.
    """

    username: str
    action: str
    detail: str = ""
    ip_address: str = ""
    id: Optional[int] = None
    created_at: Optional[str] = None
