"""
Ledger Data Model

Borrowers, loans, payments and audit log entries, with their stored
(JSON document) representation. Money is Decimal, dates are ISO-8601,
enums are uppercase strings.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
from enum import Enum
import base64

from .currency import ZERO
from .dates import parse_timestamp, to_day
from .interest import InterestModel, TermUnit
from .storage import StorageRecord


class RiskLevel(Enum):
    """Qualitative borrower classification"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    PAID = "PAID"            # terminal
    DEFAULTED = "DEFAULTED"  # terminal

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.PAID, LoanStatus.DEFAULTED)


class PaymentMethod(Enum):
    """How money moved; PENALTY marks a system charge, not a receipt"""
    CASH = "CASH"
    TRANSFER = "TRANSFER"
    OTHER = "OTHER"
    PENALTY = "PENALTY"


class AuditAction(Enum):
    """Controlled vocabulary of audit log actions"""
    CREATE_BORROWER = "CREATE_BORROWER"
    UPDATE_BORROWER = "UPDATE_BORROWER"
    DELETE_BORROWER = "DELETE_BORROWER"
    CREATE_LOAN = "CREATE_LOAN"
    DELETE_LOAN = "DELETE_LOAN"
    PAYMENT = "PAYMENT"
    SYSTEM_PENALTY = "SYSTEM_PENALTY"
    LOAN_OVERDUE = "LOAN_OVERDUE"
    UPDATE_LOAN_DUEDATE = "UPDATE_LOAN_DUEDATE"


@dataclass
class Borrower(StorageRecord):
    """A person money is lent to"""
    account_id: str
    name: str
    phone: str = ""
    id_number: str = ""
    notes: str = ""
    risk_level: RiskLevel = RiskLevel.LOW

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({
            'account_id': self.account_id,
            'name': self.name,
            'phone': self.phone,
            'id_number': self.id_number,
            'notes': self.notes,
            'risk_level': self.risk_level.value,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Borrower':
        data = cls.parse_timestamps(dict(data))
        return cls(
            id=data['id'],
            created_at=data['created_at'],
            updated_at=data.get('updated_at', data['created_at']),
            account_id=data['account_id'],
            name=data['name'],
            phone=data.get('phone') or "",
            id_number=data.get('id_number') or "",
            notes=data.get('notes') or "",
            risk_level=RiskLevel(data.get('risk_level') or RiskLevel.LOW.value),
        )


@dataclass(frozen=True)
class Payment:
    """
    A single movement on a loan. Immutable: corrections are new payments.

    Borrower payments carry a positive amount; penalties a negative one.
    """
    id: str
    loan_id: str
    amount: Decimal
    date: datetime
    method: PaymentMethod
    note: Optional[str] = None

    @property
    def is_penalty(self) -> bool:
        return self.method == PaymentMethod.PENALTY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'amount': str(self.amount),
            'date': self.date.isoformat(),
            'method': self.method.value,
            'note': self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            loan_id=data['loan_id'],
            amount=Decimal(str(data['amount'])),
            date=parse_timestamp(data['date']),
            method=PaymentMethod(data['method']),
            # Older rows used "notes"
            note=data.get('note', data.get('notes')),
        )


@dataclass
class Loan(StorageRecord):
    """Loan with its terms, derived due date and running balance"""
    account_id: str
    borrower_id: str
    principal: Decimal
    interest_rate: Decimal            # percentage, 40 means 40%
    interest_model: InterestModel
    start_date: date
    due_date: date
    total_repayment: Decimal
    balance: Decimal
    status: LoanStatus = LoanStatus.ACTIVE
    term_value: int = 1
    term_unit: TermUnit = TermUnit.MONTHS
    payments: List[Payment] = field(default_factory=list)
    signature: Optional[bytes] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def penalties(self) -> List[Payment]:
        return [p for p in self.payments if p.is_penalty]

    @property
    def amount_paid(self) -> Decimal:
        """Sum of borrower payments, penalties excluded"""
        return sum((p.amount for p in self.payments if not p.is_penalty), ZERO)

    @property
    def penalty_total(self) -> Decimal:
        """Sum of penalty charges as a positive amount"""
        return sum((-p.amount for p in self.penalties), ZERO)

    def has_penalty_after(self, cutoff: date) -> bool:
        """True if a penalty was charged on a calendar day after `cutoff`"""
        return any(p.date.date() > cutoff for p in self.penalties)

    def copy(self, **changes) -> 'Loan':
        """Shallow copy with its own payments list"""
        changes.setdefault('payments', list(self.payments))
        return replace(self, **changes)

    def core_dict(self) -> Dict[str, Any]:
        """Stored form without the optional signature field"""
        result = super().to_dict()
        result.update({
            'account_id': self.account_id,
            'borrower_id': self.borrower_id,
            'principal': str(self.principal),
            'interest_rate': str(self.interest_rate),
            'interest_model': self.interest_model.value,
            'term_value': self.term_value,
            'term_unit': self.term_unit.value,
            'start_date': self.start_date.isoformat(),
            'due_date': self.due_date.isoformat(),
            'status': self.status.value,
            'total_repayment': str(self.total_repayment),
            'balance': str(self.balance),
            'payments': [p.to_dict() for p in self.payments],
        })
        return result

    def optional_dict(self) -> Dict[str, Any]:
        """Optional fields that may be dropped by the store"""
        if self.signature is None:
            return {}
        return {'signature': base64.b64encode(self.signature).decode('ascii')}

    def to_dict(self) -> Dict[str, Any]:
        result = self.core_dict()
        result.update(self.optional_dict())
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = cls.parse_timestamps(dict(data))
        signature = data.get('signature')
        return cls(
            id=data['id'],
            created_at=data['created_at'],
            updated_at=data.get('updated_at', data['created_at']),
            account_id=data['account_id'],
            borrower_id=data['borrower_id'],
            principal=Decimal(str(data['principal'])),
            interest_rate=Decimal(str(data['interest_rate'])),
            interest_model=InterestModel(data['interest_model']),
            start_date=to_day(data['start_date']),
            due_date=to_day(data['due_date']),
            total_repayment=Decimal(str(data['total_repayment'])),
            balance=Decimal(str(data['balance'])),
            status=LoanStatus(data['status']),
            term_value=int(data.get('term_value') or 1),
            term_unit=TermUnit(data.get('term_unit') or TermUnit.MONTHS.value),
            payments=[Payment.from_dict(p) for p in data.get('payments') or []],
            signature=base64.b64decode(signature) if signature else None,
        )


@dataclass(frozen=True)
class AuditLog:
    """Append-only record of one state-changing action"""
    id: str
    account_id: str
    action: str
    timestamp: datetime
    details: str
    entity_id: Optional[str] = None
    previous_hash: str = ""
    current_hash: str = ""

    def hash_payload(self) -> Dict[str, Any]:
        """Fields covered by the hash chain (everything except current_hash)"""
        return {
            'id': self.id,
            'account_id': self.account_id,
            'action': self.action,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
        }

    def to_dict(self) -> Dict[str, Any]:
        result = self.hash_payload()
        result['current_hash'] = self.current_hash
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditLog':
        return cls(
            id=data['id'],
            account_id=data['account_id'],
            action=data['action'],
            timestamp=parse_timestamp(data['timestamp']),
            details=data.get('details') or "",
            entity_id=data.get('entity_id'),
            previous_hash=data.get('previous_hash') or "",
            current_hash=data.get('current_hash') or "",
        )
