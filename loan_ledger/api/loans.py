"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import LedgerSystem, get_ledger_system, http_error
from .schemas import (
    CreateLoanRequest, DueDateRequest, PaymentRequest,
    loan_to_response, warnings_to_response
)
from ..errors import LedgerError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Create a loan for an existing borrower"""
    try:
        result = system.engine.create_loan(
            borrower_id=request.borrower_id,
            principal=request.principal,
            rate=request.interest_rate,
            model=request.interest_model,
            start_date=request.start_date,
            term_value=request.term_value,
            term_unit=request.term_unit,
            signature=request.signature_bytes()
        )
        loan = result.loan
        return {
            "loan": loan_to_response(loan, system.engine.store.local_only_fields(loan.id)),
            "warnings": warnings_to_response(result.warnings),
            "message": "Loan created successfully"
        }

    except LedgerError as e:
        raise http_error(e)


@router.get("")
def list_loans(
    search: Optional[str] = None,
    borrower_id: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List loans, optionally for one borrower or filtered by id, status or borrower name"""
    try:
        if search:
            loans = system.engine.search_loans(search)
            if borrower_id:
                loans = [l for l in loans if l.borrower_id == borrower_id]
        else:
            loans = system.engine.list_loans(borrower_id=borrower_id)
        return {
            "loans": [loan_to_response(l, system.engine.store.local_only_fields(l.id)) for l in loans],
            "count": len(loans)
        }

    except LedgerError as e:
        raise http_error(e)


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get loan details with payment history"""
    try:
        loan = system.engine.get_loan(loan_id)
        return loan_to_response(loan, system.engine.store.local_only_fields(loan_id))

    except LedgerError as e:
        raise http_error(e)


@router.delete("/{loan_id}")
def delete_loan(
    loan_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Delete a loan"""
    try:
        system.engine.delete_loan(loan_id)
        return {"loan_id": loan_id, "message": "Loan deleted successfully"}

    except LedgerError as e:
        raise http_error(e)


@router.post("/{loan_id}/payments")
def apply_payment(
    loan_id: str,
    request: PaymentRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Record a borrower payment"""
    try:
        loan = system.engine.apply_payment(
            loan_id=loan_id,
            amount=request.amount,
            method=request.method,
            note=request.note
        )
        return loan_to_response(loan, system.engine.store.local_only_fields(loan_id))

    except LedgerError as e:
        raise http_error(e)


@router.put("/{loan_id}/due-date")
def update_due_date(
    loan_id: str,
    request: DueDateRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Move a loan's due date"""
    try:
        loan = system.engine.update_due_date(loan_id, request.due_date)
        return loan_to_response(loan, system.engine.store.local_only_fields(loan_id))

    except LedgerError as e:
        raise http_error(e)
