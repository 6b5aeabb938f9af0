"""
Payment endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import LedgerSystem, get_ledger_system, get_owner_id
from .loans import get_owned_loan
from .schemas import UpdatePaymentRequest, UpdatePaymentStatusRequest, payment_to_response
from ..models import Payment


router = APIRouter()


def get_owned_payment(system: LedgerSystem, payment_id: str, owner_id: str) -> Payment:
    payment = system.payment_store.get(payment_id)
    if payment.owner_id != owner_id:
        # Payments recorded by someone else still belong to the loan owner
        get_owned_loan(system, payment.loan_id, owner_id)
    return payment


@router.get("/{payment_id}")
def get_payment(
    payment_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get payment details"""
    payment = get_owned_payment(system, payment_id, owner_id)
    return payment_to_response(payment, system.currency)


@router.patch("/{payment_id}")
def update_payment(
    payment_id: str,
    request: UpdatePaymentRequest,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Edit a payment; amount corrections on confirmed payments adjust the loan"""
    get_owned_payment(system, payment_id, owner_id)
    payment = system.payment_store.update(
        payment_id,
        amount=request.amount,
        payment_date=request.payment_date,
        method=request.method,
        notes=request.notes,
        receipt=request.receipt.to_receipt_file() if request.receipt else None,
        user_id=owner_id
    )
    return payment_to_response(payment, system.currency)


@router.put("/{payment_id}/status")
def update_payment_status(
    payment_id: str,
    request: UpdatePaymentStatusRequest,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Confirm or reject a payment"""
    get_owned_payment(system, payment_id, owner_id)
    payment = system.payment_store.update_status(payment_id, request.status, user_id=owner_id)
    return payment_to_response(payment, system.currency)


@router.post("/{payment_id}/confirm")
def confirm_payment(
    payment_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Confirm a payment and apply it to its loan"""
    get_owned_payment(system, payment_id, owner_id)
    payment = system.payment_store.confirm(payment_id, user_id=owner_id)
    return payment_to_response(payment, system.currency)


@router.post("/{payment_id}/reject")
def reject_payment(
    payment_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Reject a pending payment"""
    get_owned_payment(system, payment_id, owner_id)
    payment = system.payment_store.reject(payment_id, user_id=owner_id)
    return payment_to_response(payment, system.currency)


@router.delete("/{payment_id}")
def delete_payment(
    payment_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Delete a pending payment"""
    get_owned_payment(system, payment_id, owner_id)
    system.payment_store.delete(payment_id, user_id=owner_id)
    return {"payment_id": payment_id, "message": "Payment deleted successfully"}
