"""
Reporting Module

View-side helpers: free-text search over borrowers and loans, and the
portfolio figures shown on the dashboard. Nothing here mutates the ledger.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .currency import ZERO, round_currency
from .models import Borrower, Loan, LoanStatus


def _matches(term: str, *values: Optional[str]) -> bool:
    return any(term in (value or "").lower() for value in values)


def filter_borrowers(borrowers: Iterable[Borrower], term: Optional[str]) -> List[Borrower]:
    """Borrowers whose name or phone contains `term`, case-insensitively"""
    borrowers = list(borrowers)
    term = (term or "").strip().lower()
    if not term:
        return borrowers
    return [b for b in borrowers if _matches(term, b.name, b.phone)]


def filter_loans(
    loans: Iterable[Loan],
    term: Optional[str],
    borrowers: Optional[Iterable[Borrower]] = None
) -> List[Loan]:
    """
    Loans whose id or status contains `term`, case-insensitively. When
    borrowers are given, the borrower's name is searched too.
    """
    loans = list(loans)
    term = (term or "").strip().lower()
    if not term:
        return loans
    names: Dict[str, str] = {b.id: b.name for b in borrowers or []}
    return [
        l for l in loans
        if _matches(term, l.id, l.status.value, names.get(l.borrower_id))
    ]


@dataclass
class PortfolioSummary:
    """Headline figures for a set of loans"""
    total_lent: Decimal = ZERO
    total_collected: Decimal = ZERO
    outstanding: Decimal = ZERO
    realized_profit: Decimal = ZERO
    overdue_count: int = 0
    overdue_amount: Decimal = ZERO
    active_count: int = 0
    paid_count: int = 0
    loan_count: int = 0

    def to_dict(self) -> Dict:
        return {
            'total_lent': str(round_currency(self.total_lent)),
            'total_collected': str(round_currency(self.total_collected)),
            'outstanding': str(round_currency(self.outstanding)),
            'realized_profit': str(round_currency(self.realized_profit)),
            'overdue_count': self.overdue_count,
            'overdue_amount': str(round_currency(self.overdue_amount)),
            'active_count': self.active_count,
            'paid_count': self.paid_count,
            'loan_count': self.loan_count,
        }


def portfolio_summary(loans: Iterable[Loan]) -> PortfolioSummary:
    """
    Aggregate a loan set.

    Collected counts borrower payments only. Realized profit is the interest
    share of what was collected: paid * (total - principal) / total.
    """
    summary = PortfolioSummary()
    for loan in loans:
        paid = loan.amount_paid
        summary.loan_count += 1
        summary.total_lent += loan.principal
        summary.total_collected += paid
        summary.outstanding += loan.balance

        if loan.status == LoanStatus.OVERDUE:
            summary.overdue_count += 1
            summary.overdue_amount += loan.balance
        elif loan.status == LoanStatus.ACTIVE:
            summary.active_count += 1
        elif loan.status == LoanStatus.PAID:
            summary.paid_count += 1

        total = loan.total_repayment
        if total > ZERO and paid > ZERO:
            summary.realized_profit += paid * (total - loan.principal) / total
    return summary
