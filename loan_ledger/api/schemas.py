"""
Pydantic schemas for API requests, and response serializers
"""

from typing import Any, Dict, List, Optional
import base64
import binascii

from pydantic import BaseModel, Field

from ..currency import round_currency
from ..errors import InvalidInput, PartialDegradation
from ..models import AuditLog, Borrower, Loan, Payment


# Borrower schemas
class CreateBorrowerRequest(BaseModel):
    name: str
    phone: str = ""
    id_number: str = ""
    notes: str = ""
    risk_level: str = Field("LOW", description="LOW, MEDIUM, HIGH or CRITICAL")


class UpdateBorrowerRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    id_number: Optional[str] = None
    notes: Optional[str] = None
    risk_level: Optional[str] = None


# Loan schemas
class CreateLoanRequest(BaseModel):
    borrower_id: str
    principal: str = Field(..., description="Decimal amount as string")
    interest_rate: str = Field(..., description="Percentage as string, 40 means 40%")
    interest_model: str = Field("FLAT", description="FLAT, SIMPLE or COMPOUND")
    start_date: Optional[str] = Field(None, description="ISO date, defaults to today")
    term_value: int = 1
    term_unit: str = Field("MONTHS", description="DAYS, WEEKS or MONTHS")
    signature: Optional[str] = Field(None, description="Base64-encoded signature image")

    def signature_bytes(self) -> Optional[bytes]:
        if not self.signature:
            return None
        text = self.signature
        # Accept data URLs as sent by canvas capture
        if text.startswith("data:") and "," in text:
            text = text.split(",", 1)[1]
        try:
            return base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError):
            raise InvalidInput("Signature is not valid base64")


class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    method: str = Field("CASH", description="CASH, TRANSFER or OTHER")
    note: Optional[str] = None


class DueDateRequest(BaseModel):
    due_date: str = Field(..., description="ISO date")


# Response serializers
def borrower_to_response(borrower: Borrower) -> Dict[str, Any]:
    return {
        "id": borrower.id,
        "name": borrower.name,
        "phone": borrower.phone,
        "id_number": borrower.id_number,
        "notes": borrower.notes,
        "risk_level": borrower.risk_level.value,
        "created_at": borrower.created_at.isoformat(),
    }


def payment_to_response(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "amount": str(round_currency(payment.amount)),
        "date": payment.date.isoformat(),
        "method": payment.method.value,
        "note": payment.note,
    }


def loan_to_response(loan: Loan, local_only: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "borrower_id": loan.borrower_id,
        "principal": str(round_currency(loan.principal)),
        "interest_rate": str(loan.interest_rate),
        "interest_model": loan.interest_model.value,
        "term_value": loan.term_value,
        "term_unit": loan.term_unit.value,
        "start_date": loan.start_date.isoformat(),
        "due_date": loan.due_date.isoformat(),
        "status": loan.status.value,
        "total_repayment": str(round_currency(loan.total_repayment)),
        "balance": str(round_currency(loan.balance)),
        "amount_paid": str(round_currency(loan.amount_paid)),
        "penalty_total": str(round_currency(loan.penalty_total)),
        "payments": [payment_to_response(p) for p in loan.payments],
        "has_signature": loan.signature is not None,
        "local_only_fields": sorted(local_only or []),
        "created_at": loan.created_at.isoformat(),
    }


def audit_to_response(entry: AuditLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "timestamp": entry.timestamp.isoformat(),
        "details": entry.details,
        "entity_id": entry.entity_id,
        "current_hash": entry.current_hash,
    }


def warnings_to_response(warnings: List[PartialDegradation]) -> List[Dict[str, str]]:
    return [w.to_dict() for w in warnings]
