"""
Borrower endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import LedgerSystem, get_ledger_system, http_error
from .schemas import (
    CreateBorrowerRequest, UpdateBorrowerRequest,
    borrower_to_response, loan_to_response
)
from ..errors import LedgerError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_borrower(
    request: CreateBorrowerRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Register a borrower"""
    try:
        borrower = system.engine.add_borrower(
            name=request.name,
            phone=request.phone,
            id_number=request.id_number,
            notes=request.notes,
            risk_level=request.risk_level
        )
        return borrower_to_response(borrower)

    except LedgerError as e:
        raise http_error(e)


@router.get("")
def list_borrowers(
    search: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List borrowers, optionally filtered by name or phone"""
    try:
        if search:
            borrowers = system.engine.search_borrowers(search)
        else:
            borrowers = system.engine.list_borrowers()
        return {
            "borrowers": [borrower_to_response(b) for b in borrowers],
            "count": len(borrowers)
        }

    except LedgerError as e:
        raise http_error(e)


@router.get("/{borrower_id}")
def get_borrower(
    borrower_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get a borrower with their loans"""
    try:
        borrower = system.engine.get_borrower(borrower_id)
        loans = system.engine.list_loans(borrower_id=borrower_id)
        response = borrower_to_response(borrower)
        response["loans"] = [
            loan_to_response(l, system.engine.store.local_only_fields(l.id)) for l in loans
        ]
        return response

    except LedgerError as e:
        raise http_error(e)


@router.patch("/{borrower_id}")
def update_borrower(
    borrower_id: str,
    request: UpdateBorrowerRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Update borrower details"""
    try:
        changes = request.model_dump(exclude_unset=True)
        borrower = system.engine.update_borrower(borrower_id, **changes)
        return borrower_to_response(borrower)

    except LedgerError as e:
        raise http_error(e)


@router.delete("/{borrower_id}")
def delete_borrower(
    borrower_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Delete a borrower and all of their loans"""
    try:
        loan_ids = system.engine.delete_borrower(borrower_id)
        return {
            "borrower_id": borrower_id,
            "deleted_loans": loan_ids,
            "message": "Borrower deleted successfully"
        }

    except LedgerError as e:
        raise http_error(e)
