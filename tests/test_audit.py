"""
Test suite for audit module

Tests the hash-chained audit log: chaining, ordering, tamper detection and
the rule that a failed audit write never fails the operation it describes.
"""

import pytest
from datetime import datetime, timezone

from loan_ledger.audit import AuditLogger, calculate_hash
from loan_ledger.errors import StoreUnavailable
from loan_ledger.models import AuditAction
from loan_ledger.storage import AUDIT_TABLE, InMemoryStorage
from loan_ledger.store import LedgerStore


FIXED = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class AuditRejectingStorage(InMemoryStorage):
    """Storage whose audit table is unwritable"""

    def save(self, table, record_id, data):
        if table == AUDIT_TABLE:
            raise StoreUnavailable("audit table offline")
        super().save(table, record_id, data)


@pytest.fixture
def store():
    store = LedgerStore(InMemoryStorage(), "acct-1")
    store.load()
    return store


class TestAuditRecording:
    """Test appending audit entries"""

    def test_entries_are_chained(self, store):
        audit = AuditLogger(store)

        first = audit.record(AuditAction.CREATE_BORROWER, "Added borrower Thandi", "b1")
        second = audit.record(AuditAction.CREATE_LOAN, "Created loan", "loan-1")

        assert first.previous_hash == ""
        assert first.current_hash == calculate_hash(first)
        assert second.previous_hash == first.current_hash
        assert second.action == "CREATE_LOAN"
        assert second.account_id == "acct-1"

    def test_most_recent_first(self, store):
        audit = AuditLogger(store)
        for i in range(3):
            audit.record(AuditAction.PAYMENT, f"Payment {i}", "loan-1")

        entries = audit.list_entries()
        assert [e.details for e in entries] == ["Payment 2", "Payment 1", "Payment 0"]
        assert len(audit.list_entries(limit=2)) == 2

    def test_timestamps_strictly_increase(self, store):
        """Test a frozen clock still yields a total order"""
        audit = AuditLogger(store, clock=lambda: FIXED)
        first = audit.record(AuditAction.PAYMENT, "one")
        second = audit.record(AuditAction.PAYMENT, "two")

        assert second.timestamp > first.timestamp

    def test_entries_for_entity(self, store):
        audit = AuditLogger(store)
        audit.record(AuditAction.CREATE_LOAN, "a", "loan-1")
        audit.record(AuditAction.CREATE_LOAN, "b", "loan-2")
        audit.record(AuditAction.PAYMENT, "c", "loan-1")

        assert [e.details for e in audit.entries_for_entity("loan-1")] == ["c", "a"]

    def test_disabled_logger_records_nothing(self, store):
        audit = AuditLogger(store, enabled=False)
        assert audit.record(AuditAction.PAYMENT, "ignored") is None
        assert store.audit_logs() == []

    def test_write_failure_is_swallowed(self):
        """Test an unwritable audit table is logged, not raised"""
        store = LedgerStore(AuditRejectingStorage(), "acct-1")
        store.load()
        audit = AuditLogger(store)

        assert audit.record(AuditAction.PAYMENT, "lost entry", "loan-1") is None
        assert audit.failures == 1
        assert store.audit_logs() == []


class TestAuditIntegrity:
    """Test hash chain verification"""

    def test_valid_chain(self, store):
        audit = AuditLogger(store)
        for i in range(5):
            audit.record(AuditAction.PAYMENT, f"Payment {i}", "loan-1")

        result = audit.verify_integrity()
        assert result["valid"]
        assert result["total_entries"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_empty_chain_is_valid(self, store):
        result = AuditLogger(store).verify_integrity()
        assert result["valid"]
        assert result["total_entries"] == 0

    def test_tampered_details_detected(self, store):
        audit = AuditLogger(store)
        audit.record(AuditAction.PAYMENT, "Payment of R100.00", "loan-1")
        target = audit.record(AuditAction.PAYMENT, "Payment of R200.00", "loan-1")
        audit.record(AuditAction.PAYMENT, "Payment of R300.00", "loan-1")

        row = store.storage.load(AUDIT_TABLE, target.id)
        row["details"] = "Payment of R2000.00"
        store.storage.save(AUDIT_TABLE, target.id, row)

        result = audit.verify_integrity()
        assert not result["valid"]
        assert [e["entry_id"] for e in result["hash_errors"]] == [target.id]

    def test_removed_entry_breaks_chain(self, store):
        audit = AuditLogger(store)
        audit.record(AuditAction.PAYMENT, "one")
        middle = audit.record(AuditAction.PAYMENT, "two")
        last = audit.record(AuditAction.PAYMENT, "three")

        store.storage.delete(AUDIT_TABLE, middle.id)

        result = audit.verify_integrity()
        assert not result["valid"]
        assert result["chain_breaks"][0]["entry_id"] == last.id
