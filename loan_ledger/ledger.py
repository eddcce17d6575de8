"""
Ledger Engine Module

Entry points for every ledger operation: borrower maintenance, loan creation
and deletion, payment application, due-date edits and read-only snapshots.
Every mutation runs on the command queue's single writer thread, is written
to the durable store before the in-memory copy changes, and is then audited.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
import logging
import uuid

from .audit import AuditLogger
from .commands import CommandQueue
from .config import LedgerConfig, get_config
from .currency import Amount, ZERO, format_amount, to_decimal
from .dates import DateLike, compute_due_date, to_day, utcnow
from .errors import InvalidInput, NotFound, PartialDegradation, StoreUnavailable
from .interest import InterestModel, TermUnit, compute_total_repayment
from .logging_config import log_action
from .models import AuditAction, AuditLog, Borrower, Loan, LoanStatus, Payment, PaymentMethod, RiskLevel
from .penalties import PenaltyScheduler, SweepReport
from .reporting import PortfolioSummary, filter_borrowers, filter_loans, portfolio_summary
from .storage import StorageInterface
from .store import LedgerStore


BORROWER_FIELDS = ('name', 'phone', 'id_number', 'notes', 'risk_level')


@dataclass
class CreateLoanResult:
    """A newly created loan plus any fields the store could not keep"""
    loan: Loan
    warnings: List[PartialDegradation] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)


def _parse_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        raise InvalidInput(f"Unknown {label} '{value}'")


def _parse_amount(value: Amount, label: str) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError as e:
        raise InvalidInput(f"Invalid {label}: {e}", {label: str(value)})


def _parse_day(value: DateLike, label: str) -> date:
    try:
        return to_day(value)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"Invalid {label}: {e}", {label: str(value)})


class LedgerEngine:
    """
    Loan ledger for one account.

    Reads return snapshots of the in-memory store. Mutations are funnelled
    through the command queue so user operations, penalty sweeps and sync
    reloads never interleave.
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_id: str,
        config: Optional[LedgerConfig] = None,
        commands: Optional[CommandQueue] = None,
        clock=None
    ):
        self.config = config or get_config()
        self.storage = storage
        self.account_id = account_id
        self.clock = clock or utcnow
        self.logger = logging.getLogger("loan_ledger.ledger")

        self.store = LedgerStore(storage, account_id)
        self.audit = AuditLogger(self.store, enabled=self.config.enable_audit_logging, clock=self.clock)
        self.commands = commands or CommandQueue(timeout=self.config.operation_timeout_seconds)
        self.scheduler = PenaltyScheduler(self, interval=self.config.sweep_interval_seconds)

        self.paid_tolerance = to_decimal(self.config.paid_tolerance)
        self.currency_symbol = self.config.currency_symbol

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Load the account's collections.

        Raises:
            StoreUnavailable: the store could not be read. The ledger stays
                blocked until start() succeeds.
        """
        self.commands.execute(self.store.load)
        self.logger.info(
            f"Ledger started for account {self.account_id}: "
            f"{len(self.store.borrowers())} borrowers, {len(self.store.loans())} loans"
        )

    def close(self) -> None:
        self.scheduler.stop()
        self.commands.stop()

    def _require_loaded(self) -> None:
        if self.store.last_error is not None:
            raise self.store.last_error
        if not self.store.loaded:
            raise StoreUnavailable(f"Ledger for account {self.account_id} has not been loaded")

    def _execute(self, fn, *args, **kwargs):
        self._require_loaded()
        return self.commands.execute(fn, *args, **kwargs)

    def _money(self, value: Amount) -> str:
        return format_amount(value, self.currency_symbol)

    def _record(self, action: AuditAction, details: str, entity_id: Optional[str] = None) -> Optional[AuditLog]:
        log_action(
            self.logger, "info", details,
            account_id=self.account_id,
            action=action.value,
            entity_id=entity_id
        )
        return self.audit.record(action, details, entity_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_borrowers(self) -> List[Borrower]:
        self._require_loaded()
        return self.store.borrowers()

    def list_loans(self, borrower_id: Optional[str] = None) -> List[Loan]:
        self._require_loaded()
        if borrower_id:
            return self.store.loans_for_borrower(borrower_id)
        return self.store.loans()

    def list_audit_logs(self, limit: Optional[int] = None, entity_id: Optional[str] = None) -> List[AuditLog]:
        """Audit entries, most recent first"""
        self._require_loaded()
        if entity_id:
            entries = self.audit.entries_for_entity(entity_id)
            return entries[:limit] if limit else entries
        return self.audit.list_entries(limit)

    def get_borrower(self, borrower_id: str) -> Borrower:
        self._require_loaded()
        borrower = self.store.get_borrower(borrower_id)
        if not borrower:
            raise NotFound("borrower", borrower_id)
        return borrower

    def get_loan(self, loan_id: str) -> Loan:
        self._require_loaded()
        loan = self.store.get_loan(loan_id)
        if not loan:
            raise NotFound("loan", loan_id)
        return loan

    def search_borrowers(self, term: str) -> List[Borrower]:
        return filter_borrowers(self.list_borrowers(), term)

    def search_loans(self, term: str) -> List[Loan]:
        return filter_loans(self.list_loans(), term, self.store.borrowers())

    def portfolio_summary(self) -> PortfolioSummary:
        return portfolio_summary(self.list_loans())

    # ------------------------------------------------------------------
    # Borrowers
    # ------------------------------------------------------------------

    def add_borrower(
        self,
        name: str,
        phone: str = "",
        id_number: str = "",
        notes: str = "",
        risk_level: Union[RiskLevel, str] = RiskLevel.LOW
    ) -> Borrower:
        """
        Register a borrower.

        Raises:
            InvalidInput: blank name or unknown risk level
        """
        if not name or not name.strip():
            raise InvalidInput("Borrower name is required")
        risk = _parse_enum(RiskLevel, risk_level, "risk level")
        return self._execute(self._add_borrower, name.strip(), phone or "", id_number or "", notes or "", risk)

    def _add_borrower(self, name: str, phone: str, id_number: str, notes: str, risk: RiskLevel) -> Borrower:
        now = self.clock()
        borrower = Borrower(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=self.account_id,
            name=name,
            phone=phone,
            id_number=id_number,
            notes=notes,
            risk_level=risk
        )
        self.store.save_borrower(borrower)
        self._record(AuditAction.CREATE_BORROWER, f"Added borrower {name}", borrower.id)
        return borrower

    def update_borrower(self, borrower_id: str, **changes: Any) -> Borrower:
        """
        Change a borrower's contact details, notes or risk level.

        Raises:
            NotFound: borrower absent
            InvalidInput: unknown field, blank name or unknown risk level
        """
        unknown = set(changes) - set(BORROWER_FIELDS)
        if unknown:
            raise InvalidInput(f"Cannot update borrower fields: {', '.join(sorted(unknown))}")
        if 'name' in changes and (not changes['name'] or not str(changes['name']).strip()):
            raise InvalidInput("Borrower name is required")
        if 'risk_level' in changes:
            changes['risk_level'] = _parse_enum(RiskLevel, changes['risk_level'], "risk level")
        if 'name' in changes:
            changes['name'] = str(changes['name']).strip()
        return self._execute(self._update_borrower, borrower_id, changes)

    def _update_borrower(self, borrower_id: str, changes: Dict[str, Any]) -> Borrower:
        borrower = self.store.get_borrower(borrower_id)
        if not borrower:
            raise NotFound("borrower", borrower_id)

        values = {k: ("" if v is None else v) for k, v in changes.items()}
        updated = Borrower(**{**borrower.__dict__, **values, 'updated_at': self.clock()})
        self.store.save_borrower(updated)

        changed = ", ".join(sorted(changes)) or "nothing"
        self._record(AuditAction.UPDATE_BORROWER, f"Updated borrower {updated.name} ({changed})", borrower_id)
        return updated

    def delete_borrower(self, borrower_id: str) -> List[str]:
        """
        Delete a borrower and all of their loans.

        Returns:
            Ids of the loans removed with the borrower
        """
        return self._execute(self._delete_borrower, borrower_id)

    def _delete_borrower(self, borrower_id: str) -> List[str]:
        borrower = self.store.get_borrower(borrower_id)
        if not borrower:
            raise NotFound("borrower", borrower_id)

        loan_ids = self.store.remove_borrower(borrower_id)
        self._record(
            AuditAction.DELETE_BORROWER,
            f"Deleted borrower {borrower.name} and {len(loan_ids)} loan(s)",
            borrower_id
        )
        return loan_ids

    # ------------------------------------------------------------------
    # Loans
    # ------------------------------------------------------------------

    def create_loan(
        self,
        borrower_id: str,
        principal: Amount,
        rate: Amount,
        model: Union[InterestModel, str] = InterestModel.FLAT,
        start_date: Optional[DateLike] = None,
        term_value: int = 1,
        term_unit: Union[TermUnit, str] = TermUnit.MONTHS,
        signature: Optional[bytes] = None
    ) -> CreateLoanResult:
        """
        Create a loan for an existing borrower.

        The due date is the 5th of the month after `start_date`; balance
        starts at the total repayment. A signature the store refuses is kept
        in memory only and reported as a warning.

        Args:
            borrower_id: Borrower the money is lent to
            principal: Amount lent, must be positive
            rate: Interest rate as a percentage
            model: Interest model
            start_date: Loan start, defaults to today
            term_value: Number of term units
            term_unit: Unit of the term
            signature: Optional signature image bytes

        Returns:
            CreateLoanResult with the loan and any PartialDegradation warnings

        Raises:
            NotFound: borrower absent
            InvalidInput: bad principal, rate, model, term or start date
        """
        principal = _parse_amount(principal, "principal")
        rate = _parse_amount(rate, "interest rate")
        model = _parse_enum(InterestModel, model, "interest model")
        term_unit = _parse_enum(TermUnit, term_unit, "term unit")
        start = _parse_day(start_date, "start date") if start_date is not None else None
        try:
            term_value = int(term_value)
        except (TypeError, ValueError):
            raise InvalidInput(f"Invalid term value '{term_value}'")
        if term_value < 1:
            raise InvalidInput("Term value must be at least 1", {"term_value": term_value})
        if signature is not None and not isinstance(signature, (bytes, bytearray)):
            raise InvalidInput("Signature must be binary image data")

        total = compute_total_repayment(principal, rate, model, term_value)
        return self._execute(
            self._create_loan, borrower_id, principal, rate, model, start,
            term_value, term_unit, total, bytes(signature) if signature is not None else None
        )

    def _create_loan(
        self,
        borrower_id: str,
        principal: Decimal,
        rate: Decimal,
        model: InterestModel,
        start: Optional[date],
        term_value: int,
        term_unit: TermUnit,
        total: Decimal,
        signature: Optional[bytes]
    ) -> CreateLoanResult:
        borrower = self.store.get_borrower(borrower_id)
        if not borrower:
            raise NotFound("borrower", borrower_id)

        now = self.clock()
        start = start or now.date()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=self.account_id,
            borrower_id=borrower_id,
            principal=principal,
            interest_rate=rate,
            interest_model=model,
            start_date=start,
            due_date=compute_due_date(start),
            total_repayment=total,
            balance=total,
            status=LoanStatus.ACTIVE,
            term_value=term_value,
            term_unit=term_unit,
            payments=[],
            signature=signature
        )

        warnings = self.store.save_loan(loan)
        details = f"Created loan of {self._money(principal)} for {borrower.name} due on {loan.due_date.isoformat()}"
        if any(w.field == 'signature' for w in warnings):
            details += " (signature saved locally)"
        self._record(AuditAction.CREATE_LOAN, details, loan.id)
        return CreateLoanResult(loan=self.store.get_loan(loan.id) or loan, warnings=warnings)

    def delete_loan(self, loan_id: str) -> None:
        """Remove a loan and its payment history"""
        self._execute(self._delete_loan, loan_id)

    def _delete_loan(self, loan_id: str) -> None:
        loan = self.store.get_loan(loan_id)
        if not loan:
            raise NotFound("loan", loan_id)
        self.store.remove_loan(loan_id)
        self._record(
            AuditAction.DELETE_LOAN,
            f"Deleted loan of {self._money(loan.principal)} (balance {self._money(loan.balance)})",
            loan_id
        )

    def apply_payment(
        self,
        loan_id: str,
        amount: Amount,
        method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        note: Optional[str] = None,
        when: Optional[datetime] = None
    ) -> Loan:
        """
        Record a borrower payment and reduce the balance.

        The balance never goes below zero. The loan becomes PAID once the
        balance is within the paid tolerance; an OVERDUE loan otherwise stays
        OVERDUE. Every call records a new payment.

        Raises:
            NotFound: loan absent
            InvalidInput: amount <= 0, PENALTY method, or a PAID/DEFAULTED loan
        """
        amount = _parse_amount(amount, "amount")
        if amount <= ZERO:
            raise InvalidInput("Payment amount must be positive", {"amount": str(amount)})
        method = _parse_enum(PaymentMethod, method, "payment method")
        if method == PaymentMethod.PENALTY:
            raise InvalidInput("Penalties are charged by the overdue sweep, not recorded as payments")
        return self._execute(self._apply_payment, loan_id, amount, method, note, when)

    def _apply_payment(
        self,
        loan_id: str,
        amount: Decimal,
        method: PaymentMethod,
        note: Optional[str],
        when: Optional[datetime]
    ) -> Loan:
        loan = self.store.get_loan(loan_id)
        if not loan:
            raise NotFound("loan", loan_id)
        if loan.is_terminal:
            raise InvalidInput(
                f"Loan {loan_id} is {loan.status.value} and cannot take payments",
                {"status": loan.status.value}
            )

        now = self.clock()
        payment = Payment(
            id=str(uuid.uuid4()),
            loan_id=loan_id,
            amount=amount,
            date=when or now,
            method=method,
            note=note
        )
        new_balance = max(ZERO, loan.balance - amount)
        status = LoanStatus.PAID if new_balance <= self.paid_tolerance else loan.status
        updated = loan.copy(
            balance=new_balance,
            status=status,
            payments=loan.payments + [payment],
            updated_at=now
        )
        self.store.save_loan(updated)

        details = f"Payment of {self._money(amount)} ({method.value}) received; balance {self._money(new_balance)}"
        if status == LoanStatus.PAID and loan.status != LoanStatus.PAID:
            details += "; loan paid in full"
        self._record(AuditAction.PAYMENT, details, loan_id)
        return self.store.get_loan(loan_id) or updated

    def update_due_date(self, loan_id: str, due_date: DateLike) -> Loan:
        """
        Move a loan's due date. The status is left as it is; the next sweep
        re-evaluates lateness against the new date.
        """
        new_due = _parse_day(due_date, "due date")
        return self._execute(self._update_due_date, loan_id, new_due)

    def _update_due_date(self, loan_id: str, new_due: date) -> Loan:
        loan = self.store.get_loan(loan_id)
        if not loan:
            raise NotFound("loan", loan_id)

        updated = loan.copy(due_date=new_due, updated_at=self.clock())
        self.store.save_loan(updated)
        self._record(
            AuditAction.UPDATE_LOAN_DUEDATE,
            f"Due date changed from {loan.due_date.isoformat()} to {new_due.isoformat()}",
            loan_id
        )
        return self.store.get_loan(loan_id) or updated

    # ------------------------------------------------------------------
    # Penalties
    # ------------------------------------------------------------------

    def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one overdue sweep immediately and wait for its report"""
        self._require_loaded()
        return self.scheduler.sweep(now)
