"""
Reporting and client aggregate endpoints
"""

from fastapi import APIRouter, Depends, HTTPException

from .dependencies import LedgerSystem, get_ledger_system, get_owner_id
from .loans import get_owned_loan
from .schemas import stringify_amounts
from ..currency import round_amount


router = APIRouter()


@router.get("/portfolio")
def portfolio_summary(
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Loan statistics for the owner's portfolio"""
    return stringify_amounts(system.reporting.portfolio_summary(owner_id=owner_id))


@router.get("/loans/{loan_id}/payments")
def payment_summary(
    loan_id: str,
    recent: int = 3,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Confirmed and pending totals for a loan and its latest payments"""
    get_owned_loan(system, loan_id, owner_id)
    return stringify_amounts(system.reporting.payment_summary(loan_id, recent=recent))


@router.get("/clients/{client_id}")
def get_client_aggregates(
    client_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Loan count and total debt for a client"""
    aggregate = system.client_aggregates.get_aggregates(client_id)
    if not aggregate:
        raise HTTPException(status_code=404, detail="Client has no loans on record")
    return {
        "client_id": client_id,
        "loans": aggregate.loans,
        "total_debt": str(round_amount(aggregate.total_debt, system.currency)),
    }


@router.post("/clients/{client_id}/rebuild")
def rebuild_client_aggregates(
    client_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Recompute a client's aggregates from its loans"""
    aggregate = system.client_aggregates.rebuild(client_id)
    return {
        "client_id": client_id,
        "loans": aggregate.loans,
        "total_debt": str(round_amount(aggregate.total_debt, system.currency)),
    }


@router.get("/audit/verify")
def verify_audit_trail(system: LedgerSystem = Depends(get_ledger_system)):
    """Check the audit hash chain"""
    result = system.audit_trail.verify_integrity()
    return {
        "valid": result["valid"],
        "total_events": result["total_events"],
        "hash_errors": len(result["hash_errors"]),
        "chain_breaks": len(result["chain_breaks"]),
    }
