"""
Test suite for the ledger engine

Covers borrower maintenance, loan creation, payment application, due-date
edits, cascade deletes, degraded signature storage and store failures.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from loan_ledger.config import LedgerConfig
from loan_ledger.errors import (
    InvalidInput, NotFound, PermissionDenied, SchemaMissing, StoreUnavailable
)
from loan_ledger.interest import InterestModel, TermUnit
from loan_ledger.ledger import LedgerEngine
from loan_ledger.models import AuditAction, LoanStatus, PaymentMethod, RiskLevel
from loan_ledger.storage import AUDIT_TABLE, LOANS_TABLE, InMemoryStorage, SQLiteStorage


NOW = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class UnreachableStorage(InMemoryStorage):
    """Storage that refuses every read"""

    def find(self, table, filters):
        raise PermissionDenied("row level security denied access", {"table": table})


class FlakyLoanStorage(InMemoryStorage):
    """Storage whose loan writes can be switched off"""

    def __init__(self):
        super().__init__()
        self.fail_loans = False

    def save(self, table, record_id, data):
        if self.fail_loans and table == LOANS_TABLE:
            raise StoreUnavailable("connection reset")
        super().save(table, record_id, data)


class AuditRejectingStorage(InMemoryStorage):
    def save(self, table, record_id, data):
        if table == AUDIT_TABLE:
            raise StoreUnavailable("audit table offline")
        super().save(table, record_id, data)


def make_engine(storage=None, **config_values):
    config = LedgerConfig(account_id="acct-1", storage_backend="memory", **config_values)
    return LedgerEngine(storage or InMemoryStorage(), "acct-1", config=config, clock=lambda: NOW)


@pytest.fixture
def engine():
    engine = make_engine()
    engine.start()
    yield engine
    engine.close()


@pytest.fixture
def borrower(engine):
    return engine.add_borrower("Thandi Mokoena", phone="082 555 0101", risk_level="MEDIUM")


@pytest.fixture
def loan(engine, borrower):
    return engine.create_loan(borrower.id, 1000, 40, InterestModel.FLAT, "2024-01-15").loan


def actions(engine):
    return [e.action for e in engine.list_audit_logs()]


class TestBorrowers:
    """Test borrower maintenance"""

    def test_add_borrower(self, engine, borrower):
        assert borrower.name == "Thandi Mokoena"
        assert borrower.risk_level == RiskLevel.MEDIUM
        assert borrower.account_id == "acct-1"
        assert engine.list_borrowers() == [borrower]
        assert engine.storage.exists("borrowers", borrower.id)
        assert actions(engine) == ["CREATE_BORROWER"]

    def test_name_required(self, engine):
        with pytest.raises(InvalidInput):
            engine.add_borrower("   ")

    def test_unknown_risk_level(self, engine):
        with pytest.raises(InvalidInput):
            engine.add_borrower("Sipho", risk_level="EXTREME")

    def test_update_borrower(self, engine, borrower):
        updated = engine.update_borrower(borrower.id, phone="083 000 0000", risk_level="HIGH")

        assert updated.phone == "083 000 0000"
        assert updated.risk_level == RiskLevel.HIGH
        assert updated.name == borrower.name
        assert engine.get_borrower(borrower.id).phone == "083 000 0000"
        assert actions(engine)[0] == "UPDATE_BORROWER"

    def test_update_rejects_unknown_fields(self, engine, borrower):
        with pytest.raises(InvalidInput):
            engine.update_borrower(borrower.id, account_id="someone-else")

    def test_update_missing_borrower(self, engine):
        with pytest.raises(NotFound):
            engine.update_borrower("missing", phone="1")

    def test_delete_cascades_to_loans(self, engine, borrower):
        """Test deleting a borrower with two loans leaves no orphans"""
        first = engine.create_loan(borrower.id, 1000, 40, InterestModel.FLAT, "2024-01-15").loan
        second = engine.create_loan(borrower.id, 500, 30, InterestModel.FLAT, "2024-01-20").loan
        other = engine.add_borrower("Sipho Dlamini")
        kept = engine.create_loan(other.id, 200, 20, InterestModel.FLAT, "2024-01-20").loan

        deleted = engine.delete_borrower(borrower.id)

        assert sorted(deleted) == sorted([first.id, second.id])
        assert [l.id for l in engine.list_loans()] == [kept.id]
        assert not any(l.borrower_id == borrower.id for l in engine.list_loans())
        assert engine.storage.find(LOANS_TABLE, {"borrower_id": borrower.id}) == []
        with pytest.raises(NotFound):
            engine.get_borrower(borrower.id)
        assert actions(engine)[0] == "DELETE_BORROWER"


class TestLoanCreation:
    """Test loan creation"""

    def test_create_loan(self, engine, borrower):
        result = engine.create_loan(borrower.id, 1000, 40, InterestModel.FLAT, "2024-01-15")
        loan = result.loan

        assert result.warnings == []
        assert loan.due_date == date(2024, 2, 5)
        assert loan.total_repayment == Decimal('1400')
        assert loan.balance == Decimal('1400')
        assert loan.status == LoanStatus.ACTIVE
        assert loan.payments == []
        assert loan.term_value == 1
        assert loan.term_unit == TermUnit.MONTHS

    def test_create_loan_audit_describes_principal_and_due_date(self, engine, loan):
        entry = engine.list_audit_logs()[0]
        assert entry.action == AuditAction.CREATE_LOAN.value
        assert entry.entity_id == loan.id
        assert "R1,000.00" in entry.details
        assert "2024-02-05" in entry.details

    def test_start_defaults_to_today(self, engine, borrower):
        loan = engine.create_loan(borrower.id, 1000, 40).loan
        assert loan.start_date == date(2024, 1, 15)
        assert loan.due_date == date(2024, 2, 5)

    def test_unknown_borrower(self, engine):
        with pytest.raises(NotFound):
            engine.create_loan("missing", 1000, 40, InterestModel.FLAT, "2024-01-15")
        assert engine.list_loans() == []

    def test_invalid_terms(self, engine, borrower):
        with pytest.raises(InvalidInput):
            engine.create_loan(borrower.id, 0, 40)
        with pytest.raises(InvalidInput):
            engine.create_loan(borrower.id, 1000, -5)
        with pytest.raises(InvalidInput):
            engine.create_loan(borrower.id, "lots", 40)
        with pytest.raises(InvalidInput):
            engine.create_loan(borrower.id, 1000, 40, start_date="not a date")
        assert engine.list_loans() == []

    def test_compound_loan(self, engine, borrower):
        loan = engine.create_loan(
            borrower.id, 1000, 10, "COMPOUND", "2024-01-15", term_value=3, term_unit="WEEKS"
        ).loan
        assert loan.total_repayment == Decimal('1331')
        assert loan.term_unit == TermUnit.WEEKS

    def test_signature_persisted(self, engine, borrower):
        signature = b"\x89PNG small signature"
        result = engine.create_loan(borrower.id, 1000, 40, signature=signature)

        assert result.warnings == []
        stored = engine.storage.load(LOANS_TABLE, result.loan.id)
        assert "signature" in stored
        assert engine.get_loan(result.loan.id).signature == signature


class TestSignatureDegradation:
    """Test loan creation when the store refuses the signature"""

    @pytest.fixture
    def engine(self):
        engine = make_engine(InMemoryStorage(max_field_bytes=1000))
        engine.start()
        yield engine
        engine.close()

    def test_loan_created_with_warning(self, engine):
        borrower = engine.add_borrower("Thandi")
        signature = bytes(range(256)) * 8

        result = engine.create_loan(borrower.id, 1000, 40, signature=signature)

        assert result.degraded
        assert [w.field for w in result.warnings] == ["signature"]
        assert result.loan.signature == signature
        assert engine.store.local_only_fields(result.loan.id) == {"signature"}

        stored = engine.storage.load(LOANS_TABLE, result.loan.id)
        assert Decimal(stored["balance"]) == Decimal('1400')
        assert "signature" not in stored

        entry = engine.list_audit_logs()[0]
        assert entry.action == "CREATE_LOAN"
        assert "signature saved locally" in entry.details

    def test_local_signature_survives_reload_and_payment(self, engine):
        borrower = engine.add_borrower("Thandi")
        signature = bytes(range(256)) * 8
        loan = engine.create_loan(borrower.id, 1000, 40, signature=signature).loan

        engine.apply_payment(loan.id, 100)
        engine.commands.execute(engine.store.reload)

        assert engine.get_loan(loan.id).signature == signature
        assert engine.get_loan(loan.id).balance == Decimal('1300')


class TestPayments:
    """Test payment application"""

    def test_full_payment_marks_paid(self, engine, loan):
        updated = engine.apply_payment(loan.id, 1400, PaymentMethod.CASH)

        assert updated.balance == Decimal('0')
        assert updated.status == LoanStatus.PAID
        assert len(updated.payments) == 1
        assert updated.payments[0].date == NOW
        assert actions(engine)[0] == "PAYMENT"

    def test_partial_payment(self, engine, loan):
        updated = engine.apply_payment(loan.id, "500.50", "transfer", note="EFT ref 123")

        assert updated.balance == Decimal('899.50')
        assert updated.status == LoanStatus.ACTIVE
        assert updated.payments[0].method == PaymentMethod.TRANSFER
        assert updated.payments[0].note == "EFT ref 123"

    def test_within_tolerance_is_paid(self, engine, loan):
        updated = engine.apply_payment(loan.id, Decimal('1399.20'))
        assert updated.balance == Decimal('0.80')
        assert updated.status == LoanStatus.PAID

    def test_overpayment_clamps_at_zero(self, engine, loan):
        updated = engine.apply_payment(loan.id, 2000)
        assert updated.balance == Decimal('0')
        assert updated.status == LoanStatus.PAID

    def test_two_calls_are_two_payments(self, engine, loan):
        engine.apply_payment(loan.id, 100)
        updated = engine.apply_payment(loan.id, 100)

        assert len(updated.payments) == 2
        assert updated.payments[0].id != updated.payments[1].id
        assert updated.balance == Decimal('1200')

    def test_overdue_stays_overdue(self, engine, loan):
        """Test a partial payment does not reset OVERDUE to ACTIVE"""
        engine.run_sweep(datetime(2024, 3, 1, tzinfo=timezone.utc))
        assert engine.get_loan(loan.id).status == LoanStatus.OVERDUE

        updated = engine.apply_payment(loan.id, 500)
        assert updated.status == LoanStatus.OVERDUE
        assert updated.balance == Decimal('1300')

        cleared = engine.apply_payment(loan.id, 1300)
        assert cleared.status == LoanStatus.PAID

    def test_rejects_bad_payments(self, engine, loan):
        with pytest.raises(InvalidInput):
            engine.apply_payment(loan.id, 0)
        with pytest.raises(InvalidInput):
            engine.apply_payment(loan.id, -50)
        with pytest.raises(InvalidInput):
            engine.apply_payment(loan.id, 50, PaymentMethod.PENALTY)
        with pytest.raises(InvalidInput):
            engine.apply_payment(loan.id, 50, "CHEQUE")
        with pytest.raises(InvalidInput):
            engine.apply_payment(loan.id, "10O")
        with pytest.raises(InvalidInput):
            engine.apply_payment(loan.id, "NaN")
        with pytest.raises(NotFound):
            engine.apply_payment("missing", 50)
        assert engine.get_loan(loan.id).payments == []
        assert engine.get_loan(loan.id).balance == Decimal('1400')

    def test_exponent_amount_applied_in_full(self, engine, loan):
        updated = engine.apply_payment(loan.id, "1e3")
        assert updated.balance == Decimal('400')
        assert updated.payments[0].amount == Decimal('1000')

    def test_no_payments_after_closure(self, engine, loan):
        engine.apply_payment(loan.id, 1400)
        with pytest.raises(InvalidInput):
            engine.apply_payment(loan.id, 10)

    def test_balance_never_negative(self, engine, loan):
        """Test balance stays non-negative through payments and sweeps"""
        engine.apply_payment(loan.id, 300)
        engine.run_sweep(datetime(2024, 2, 10, tzinfo=timezone.utc))
        engine.apply_payment(loan.id, 700)
        engine.run_sweep(datetime(2024, 2, 11, tzinfo=timezone.utc))

        current = engine.get_loan(loan.id)
        assert current.balance >= 0
        assert current.balance == current.total_repayment - current.amount_paid

        final = engine.apply_payment(loan.id, 5000)
        assert final.balance == Decimal('0')

    def test_store_failure_leaves_memory_unchanged(self):
        """Test the cache only changes after a successful durable write"""
        storage = FlakyLoanStorage()
        engine = make_engine(storage)
        engine.start()
        try:
            borrower = engine.add_borrower("Thandi")
            loan = engine.create_loan(borrower.id, 1000, 40).loan
            storage.fail_loans = True

            with pytest.raises(StoreUnavailable):
                engine.apply_payment(loan.id, 500)

            assert engine.get_loan(loan.id).balance == Decimal('1400')
            assert engine.get_loan(loan.id).payments == []
            assert actions(engine)[0] == "CREATE_LOAN"
        finally:
            engine.close()

    def test_audit_failure_does_not_fail_payment(self):
        engine = make_engine(AuditRejectingStorage())
        engine.start()
        try:
            borrower = engine.add_borrower("Thandi")
            loan = engine.create_loan(borrower.id, 1000, 40).loan
            updated = engine.apply_payment(loan.id, 400)

            assert updated.balance == Decimal('1000')
            assert engine.audit.failures == 3
            assert engine.list_audit_logs() == []
        finally:
            engine.close()


class TestLoanMaintenance:
    """Test due-date edits and deletion"""

    def test_update_due_date(self, engine, loan):
        updated = engine.update_due_date(loan.id, "2024-03-05")

        assert updated.due_date == date(2024, 3, 5)
        assert updated.status == LoanStatus.ACTIVE
        entry = engine.list_audit_logs()[0]
        assert entry.action == "UPDATE_LOAN_DUEDATE"
        assert "2024-02-05" in entry.details and "2024-03-05" in entry.details

    def test_update_due_date_invalid(self, engine, loan):
        with pytest.raises(InvalidInput):
            engine.update_due_date(loan.id, "05/03/2024")
        with pytest.raises(NotFound):
            engine.update_due_date("missing", "2024-03-05")

    def test_delete_loan(self, engine, loan):
        engine.delete_loan(loan.id)

        assert engine.list_loans() == []
        assert not engine.storage.exists(LOANS_TABLE, loan.id)
        assert actions(engine)[0] == "DELETE_LOAN"
        with pytest.raises(NotFound):
            engine.delete_loan(loan.id)

    def test_snapshots_are_copies(self, engine, loan):
        snapshot = engine.list_loans()[0]
        snapshot.balance = Decimal('0')
        assert engine.get_loan(loan.id).balance == Decimal('1400')


class TestAuditTrail:
    """Test one audit entry per mutation, appended and never rewritten"""

    def run_operations(self, engine):
        borrower = engine.add_borrower("Thandi Mokoena")
        loan = engine.create_loan(borrower.id, 1000, 40, InterestModel.FLAT, "2024-01-15").loan
        engine.apply_payment(loan.id, 100)
        report = engine.run_sweep(datetime(2024, 2, 6, 8, 0, tzinfo=timezone.utc))
        assert report.penalized == [loan.id]
        engine.update_due_date(loan.id, "2024-03-05")
        engine.delete_loan(loan.id)

    def test_entries_accumulate_per_operation(self, engine):
        self.run_operations(engine)
        first = list(reversed(engine.list_audit_logs()))
        assert [e.action for e in first] == [
            "CREATE_BORROWER", "CREATE_LOAN", "PAYMENT",
            "SYSTEM_PENALTY", "UPDATE_LOAN_DUEDATE", "DELETE_LOAN",
        ]

        self.run_operations(engine)
        entries = list(reversed(engine.list_audit_logs()))

        assert len(entries) == 2 * len(first)
        assert [(e.id, e.current_hash) for e in entries[:len(first)]] == \
            [(e.id, e.current_hash) for e in first]
        assert len({e.id for e in entries}) == len(entries)
        assert engine.audit.verify_integrity()["valid"]
        assert engine.audit.verify_integrity()["total_entries"] == len(entries)


class TestSearch:
    """Test view filters exposed by the engine"""

    def test_search(self, engine, borrower, loan):
        other = engine.add_borrower("Sipho Dlamini", phone="071 222 3333")
        engine.create_loan(other.id, 200, 20)

        assert [b.name for b in engine.search_borrowers("sipho")] == ["Sipho Dlamini"]
        assert [b.name for b in engine.search_borrowers("082")] == ["Thandi Mokoena"]
        assert [l.id for l in engine.search_loans("mokoena")] == [loan.id]
        assert len(engine.search_loans("active")) == 2
        assert len(engine.search_loans("")) == 2

    def test_portfolio_summary(self, engine, loan):
        engine.apply_payment(loan.id, 700)
        summary = engine.portfolio_summary()

        assert summary.total_lent == Decimal('1000')
        assert summary.total_collected == Decimal('700')
        assert summary.outstanding == Decimal('700')
        assert summary.realized_profit == Decimal('200')


class TestStoreUnavailable:
    """Test a ledger that cannot reach its store"""

    def test_permission_denied_blocks_ledger(self):
        engine = make_engine(UnreachableStorage())
        try:
            with pytest.raises(PermissionDenied):
                engine.start()

            assert engine.store.borrowers() == []
            with pytest.raises(PermissionDenied):
                engine.list_loans()
            with pytest.raises(PermissionDenied):
                engine.add_borrower("Thandi")
        finally:
            engine.close()

    def test_schema_missing_is_distinguishable(self):
        engine = make_engine(SQLiteStorage(":memory:", auto_create_tables=False))
        try:
            with pytest.raises(SchemaMissing):
                engine.start()
            with pytest.raises(SchemaMissing):
                engine.list_borrowers()
        finally:
            engine.close()

    def test_not_started(self):
        engine = make_engine()
        with pytest.raises(StoreUnavailable):
            engine.list_borrowers()
