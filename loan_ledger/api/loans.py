"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import LedgerSystem, get_ledger_system, get_owner_id
from .schemas import (
    CreateLoanRequest, CreatePaymentRequest, OverdueScanRequest, UpdateLoanTermsRequest,
    loan_to_response, payment_to_response, schedule_to_response
)
from ..models import Loan


router = APIRouter()


def get_owned_loan(system: LedgerSystem, loan_id: str, owner_id: str) -> Loan:
    """Load a loan, hiding loans of other owners"""
    loan = system.loan_manager.get_loan(loan_id)
    if loan.owner_id != owner_id:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Originate a new loan"""
    loan = system.loan_manager.create_loan(
        client_id=request.client_id,
        owner_id=owner_id,
        principal=request.principal,
        interest_rate=request.interest_rate,
        term_months=request.term_months,
        payment_frequency=request.payment_frequency,
        start_date=request.start_date,
        description=request.description,
        notes=request.notes
    )
    return loan_to_response(loan, system.currency)


@router.get("")
def list_loans(
    client_id: Optional[str] = None,
    status: Optional[str] = None,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List the owner's loans, optionally for one client or status"""
    loans = system.loan_manager.list_loans(client_id=client_id, owner_id=owner_id, status=status)
    return {"loans": [loan_to_response(loan, system.currency) for loan in loans]}


@router.post("/overdue-scan")
def scan_overdue(
    request: OverdueScanRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Mark overdue active loans as late"""
    changed = system.overdue_monitor.mark_overdue(request.as_of)
    return {"marked_late": changed, "count": len(changed)}


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get loan details"""
    loan = get_owned_loan(system, loan_id, owner_id)
    return loan_to_response(loan, system.currency)


@router.patch("/{loan_id}")
def update_loan_terms(
    loan_id: str,
    request: UpdateLoanTermsRequest,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Edit loan terms; the ledger is re-derived from the amount already paid"""
    get_owned_loan(system, loan_id, owner_id)
    loan = system.loan_manager.update_loan_terms(
        loan_id,
        principal=request.principal,
        interest_rate=request.interest_rate,
        term_months=request.term_months,
        payment_frequency=request.payment_frequency,
        start_date=request.start_date,
        description=request.description,
        notes=request.notes,
        user_id=owner_id
    )
    return loan_to_response(loan, system.currency)


@router.delete("/{loan_id}")
def delete_loan(
    loan_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Delete a loan and all of its payments"""
    get_owned_loan(system, loan_id, owner_id)
    loan = system.loan_manager.delete_loan(loan_id, user_id=owner_id)
    return {"loan_id": loan.id, "message": "Loan deleted successfully"}


@router.get("/{loan_id}/schedule")
def get_loan_schedule(
    loan_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get the installment plan"""
    get_owned_loan(system, loan_id, owner_id)
    schedule = system.loan_manager.get_schedule(loan_id)
    return {"schedule": schedule_to_response(schedule, system.currency)}


@router.get("/{loan_id}/payments")
def list_loan_payments(
    loan_id: str,
    status: Optional[str] = None,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List a loan's payments, most recent first"""
    get_owned_loan(system, loan_id, owner_id)
    payments = system.payment_store.list_by_loan(loan_id, status=status)
    return {"payments": [payment_to_response(p, system.currency) for p in payments]}


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def create_payment(
    loan_id: str,
    request: CreatePaymentRequest,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Submit a payment, optionally confirming it at once"""
    get_owned_loan(system, loan_id, owner_id)
    receipt = request.receipt.to_receipt_file() if request.receipt else None

    create = system.payment_store.record_payment if request.confirm else system.payment_store.create
    payment = create(
        loan_id,
        request.amount,
        payment_date=request.payment_date,
        method=request.method,
        owner_id=owner_id,
        notes=request.notes,
        receipt=receipt
    )
    return payment_to_response(payment, system.currency)
