"""
Reporting and sweep endpoints
"""

from fastapi import APIRouter, Depends

from .deps import LedgerSystem, get_ledger_system, http_error
from ..errors import LedgerError


router = APIRouter()


@router.get("/portfolio")
def portfolio_summary(system: LedgerSystem = Depends(get_ledger_system)):
    """Dashboard figures for the whole loan book"""
    try:
        return system.engine.portfolio_summary().to_dict()

    except LedgerError as e:
        raise http_error(e)


sweep_router = APIRouter()


@sweep_router.post("")
def run_sweep(system: LedgerSystem = Depends(get_ledger_system)):
    """Run the overdue penalty sweep now, against the ledger's own clock"""
    try:
        return system.engine.run_sweep().to_dict()

    except LedgerError as e:
        raise http_error(e)
