"""
Ledger Error Taxonomy

Exceptions raised by the ledger engine and its storage backends. Callers
can tell a bad request (InvalidInput, NotFound) apart from a store-level
problem (ConflictOrDuplicate, StoreUnavailable) without parsing messages.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for all ledger errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class InvalidInput(LedgerError):
    """Raised when a caller-supplied value is rejected"""
    pass


class NotFound(LedgerError):
    """Raised when a referenced entity does not exist"""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type.capitalize()} '{entity_id}' not found",
            {"entity_type": entity_type, "entity_id": entity_id}
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class StoreError(LedgerError):
    """Base class for structured failures reported by a storage backend"""
    pass


class ConflictOrDuplicate(StoreError):
    """Raised on a store-level constraint violation"""
    pass


class FieldRejected(StoreError):
    """Raised when the store refuses one field of an otherwise valid record"""

    def __init__(self, field_name: str, reason: str = ""):
        message = f"Store rejected field '{field_name}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"field": field_name})
        self.field_name = field_name


class StoreUnavailable(StoreError):
    """Raised when the store is unreachable or misconfigured"""
    pass


class PermissionDenied(StoreUnavailable):
    """Raised when the store refuses access to the account's rows"""
    pass


class SchemaMissing(StoreUnavailable):
    """Raised when the store has not been set up with the ledger tables"""
    pass


class OperationTimeout(StoreUnavailable):
    """Raised when a queued mutation did not complete in the allowed time"""
    pass


@dataclass(frozen=True)
class PartialDegradation:
    """
    Warning returned alongside a successful mutation when an optional field
    could not be persisted. The primary entity exists; only `field` is
    missing from the durable copy.
    """
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}
