"""
audit/store.py -- SQLAlchemy Core persistence for the audit log.

Pattern: Repository + Data Mapper, same as auth/store.py. Entries are only
ever inserted and listed; there is no update or delete path.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    audit = AuditStore("sqlite:///dnsdesk.db")
    audit.log(AuditEntry(username="alice", action="login", detail="auth=ldap"))
    entries, total = audit.list_entries(limit=50, offset=0)
    audit.close()
"""

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, func, select
from sqlalchemy.engine import Engine

from audit.models import AuditEntry

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_audit_log = Table(
    "audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False),
    Column("action", String(50), nullable=False),
    Column("detail", Text, nullable=False, server_default=""),
    Column("ip_address", String(64), nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False, index=True),
)


class AuditStore:
    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        metadata.create_all(self.engine)

    def log(self, entry: AuditEntry) -> int:
        """Append an entry and return its ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_log.insert().values(
                    username=entry.username,
                    action=entry.action,
                    detail=entry.detail,
                    ip_address=entry.ip_address,
                    created_at=datetime.now(timezone.utc).isoformat(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_entries(self, limit: int, offset: int) -> tuple[list[AuditEntry], int]:
        """Return one page of entries, newest first, and the total entry count."""
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_audit_log)).scalar() or 0
            rows = conn.execute(
                _audit_log.select()
                .order_by(_audit_log.c.created_at.desc(), _audit_log.c.id.desc())
                .limit(limit)
                .offset(offset)
            ).fetchall()
        return [_row_to_entry(r) for r in rows], total

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        username=row.username,
        action=row.action,
        detail=row.detail or "",
        ip_address=row.ip_address or "",
        created_at=row.created_at,
    )
