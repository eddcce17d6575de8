"""
Audit log endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query

from .deps import LedgerSystem, get_ledger_system, http_error
from .schemas import audit_to_response
from ..errors import LedgerError


router = APIRouter()


@router.get("")
def list_audit_logs(
    limit: Optional[int] = Query(None, ge=1),
    entity_id: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Audit entries, most recent first"""
    try:
        entries = system.engine.list_audit_logs(limit=limit, entity_id=entity_id)
        return {
            "entries": [audit_to_response(e) for e in entries],
            "count": len(entries)
        }

    except LedgerError as e:
        raise http_error(e)


@router.get("/verify")
def verify_audit_chain(system: LedgerSystem = Depends(get_ledger_system)):
    """Re-compute the audit hash chain"""
    try:
        return system.engine.audit.verify_integrity()

    except LedgerError as e:
        raise http_error(e)
