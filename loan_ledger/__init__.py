"""
Loan Ledger

Bookkeeping engine for a small lender: borrowers, loans, payments, overdue
penalties and a hash-chained audit trail of every change.
"""

__version__ = "1.0.0"
