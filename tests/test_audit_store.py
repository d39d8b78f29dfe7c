"""
tests/test_audit_store.py -- Unit tests for AuditStore (audit/store.py).
"""

from __future__ import annotations

from audit.models import AuditEntry


def test_log_and_list_newest_first(stores) -> None:
    _, audit_store = stores
    for i in range(3):
        audit_store.log(AuditEntry(username="root", action=f"action{i}", ip_address="10.0.0.1"))
    entries, total = audit_store.list_entries(limit=10, offset=0)
    assert total == 3
    assert [e.action for e in entries] == ["action2", "action1", "action0"]
    assert entries[0].ip_address == "10.0.0.1"
    assert entries[0].created_at


def test_pagination(stores) -> None:
    _, audit_store = stores
    for i in range(5):
        audit_store.log(AuditEntry(username="root", action=f"a{i}"))
    page, total = audit_store.list_entries(limit=2, offset=2)
    assert total == 5
    assert [e.action for e in page] == ["a2", "a1"]


def test_empty(stores) -> None:
    _, audit_store = stores
    assert audit_store.list_entries(limit=50, offset=0) == ([], 0)
