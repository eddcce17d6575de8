"""
Penalty Accrual Module

Periodic overdue sweep. A loan past its due date is charged one penalty
(another flat interest charge on the principal) and marked OVERDUE. A
PENALTY payment dated after the due date means the loan was already charged
for that breach, so repeated sweeps never charge twice.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
import logging
import threading
import uuid

from .dates import is_past_due
from .interest import compute_penalty
from .logging_config import log_action
from .models import AuditAction, Loan, LoanStatus, Payment, PaymentMethod


@dataclass
class SweepReport:
    """Outcome of one overdue sweep"""
    checked: int = 0
    penalized: List[str] = field(default_factory=list)
    flagged: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'checked': self.checked,
            'penalized': list(self.penalized),
            'flagged': list(self.flagged),
            'failed': dict(self.failed),
        }


class PenaltyScheduler:
    """
    Runs overdue sweeps for a LedgerEngine, on demand or on a timer.

    Sweeps are executed on the engine's command queue, the same writer that
    applies payments, so a penalty and a payment never race on one loan.
    """

    def __init__(self, engine, interval: float = 60.0):
        self.engine = engine
        self.interval = interval
        self.logger = logging.getLogger("loan_ledger.penalties")
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._hooked = False
        self.last_report: Optional[SweepReport] = None

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one sweep on the writer thread and return its report"""
        return self.engine.commands.execute(self._sweep, now)

    def _sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.engine.clock()
        report = SweepReport()

        for loan in self.engine.store.loans():
            if loan.is_terminal:
                continue
            report.checked += 1
            try:
                outcome = self._accrue(loan, now)
            except Exception as e:
                # One bad loan must not stop the sweep
                report.failed[loan.id] = str(e)
                self.logger.error(f"Penalty check failed for loan {loan.id}: {e}")
                continue
            if outcome == 'penalized':
                report.penalized.append(loan.id)
            elif outcome == 'flagged':
                report.flagged.append(loan.id)

        if report.penalized or report.flagged or report.failed:
            self.logger.info(
                f"Sweep checked {report.checked} loans: {len(report.penalized)} penalized, "
                f"{len(report.flagged)} flagged overdue, {len(report.failed)} failed"
            )
        self.last_report = report
        return report

    def _accrue(self, loan: Loan, now: datetime) -> Optional[str]:
        if not is_past_due(loan.due_date, now):
            return None

        if loan.has_penalty_after(loan.due_date):
            if loan.status == LoanStatus.OVERDUE:
                return None
            updated = loan.copy(status=LoanStatus.OVERDUE, updated_at=now)
            self.engine.store.save_loan(updated)
            self._record(
                AuditAction.LOAN_OVERDUE,
                f"Loan marked overdue; already penalized for due date {loan.due_date.isoformat()}",
                loan.id
            )
            return 'flagged'

        amount = compute_penalty(loan.principal, loan.interest_rate)
        penalty = Payment(
            id=str(uuid.uuid4()),
            loan_id=loan.id,
            amount=-amount,
            date=now,
            method=PaymentMethod.PENALTY,
            note=f"Automatic penalty for missing due date: {loan.due_date.isoformat()}"
        )
        updated = loan.copy(
            balance=loan.balance + amount,
            total_repayment=loan.total_repayment + amount,
            status=LoanStatus.OVERDUE,
            payments=loan.payments + [penalty],
            updated_at=now
        )
        self.engine.store.save_loan(updated)
        self._record(
            AuditAction.SYSTEM_PENALTY,
            f"Penalty of {self.engine._money(amount)} applied for missing due date "
            f"{loan.due_date.isoformat()}; balance {self.engine._money(updated.balance)}",
            loan.id
        )
        return 'penalized'

    def _record(self, action: AuditAction, details: str, loan_id: str) -> None:
        log_action(
            self.logger, "warning", details,
            account_id=self.engine.account_id,
            action=action.value,
            entity_id=loan_id
        )
        self.engine.audit.record(action, details, loan_id)

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start periodic sweeps, plus one as soon as the loan set is first populated"""
        if self.is_running():
            return
        if not self._hooked:
            self.engine.store.on_populated(self._on_populated)
            self._hooked = True

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="penalty-sweep")
        self._thread.daemon = True
        self._thread.start()
        self.logger.info(f"Penalty sweep started every {self.interval}s")

        if self.engine.store.loans():
            self._post_sweep()

    def stop(self) -> None:
        if not self.is_running():
            return
        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
        self.logger.info("Penalty sweep stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self._post_sweep()

    def _on_populated(self) -> None:
        if self.is_running():
            self._post_sweep()

    def _post_sweep(self) -> None:
        if self.engine.store.last_error is not None:
            return
        self.engine.commands.post(self._sweep)
