"""
Pydantic schemas for API requests and responses
"""

import base64
import binascii
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..calculator import ScheduledInstallment
from ..currency import Currency, round_amount, round_percentage
from ..exceptions import ValidationError
from ..models import Loan, Payment
from ..uploads import ReceiptFile


class ReceiptModel(BaseModel):
    filename: str
    content_base64: str = Field(..., description="Receipt image, base64 encoded")
    content_type: str = "image/jpeg"

    def to_receipt_file(self) -> ReceiptFile:
        try:
            content = base64.b64decode(self.content_base64, validate=True)
            return ReceiptFile(filename=self.filename, content=content, content_type=self.content_type)
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"Invalid receipt: {e}", field="receipt")


# Loan schemas
class CreateLoanRequest(BaseModel):
    client_id: str
    principal: str = Field(..., description="Decimal amount as string")
    interest_rate: str = Field(..., description="Monthly interest percentage as string, e.g. '10'")
    term_months: int
    payment_frequency: str = Field("monthly", description="weekly, biweekly or monthly")
    start_date: Optional[date] = None
    description: Optional[str] = None
    notes: Optional[str] = None


class UpdateLoanTermsRequest(BaseModel):
    principal: Optional[str] = None
    interest_rate: Optional[str] = None
    term_months: Optional[int] = None
    payment_frequency: Optional[str] = None
    start_date: Optional[date] = None
    description: Optional[str] = None
    notes: Optional[str] = None


class OverdueScanRequest(BaseModel):
    as_of: Optional[date] = None


# Payment schemas
class CreatePaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: Optional[date] = None
    method: str = Field("cash", description="cash, bank_transfer, card or other")
    notes: Optional[str] = None
    receipt: Optional[ReceiptModel] = None
    confirm: bool = Field(False, description="Submit and confirm in one call")


class UpdatePaymentRequest(BaseModel):
    amount: Optional[str] = None
    payment_date: Optional[date] = None
    method: Optional[str] = None
    notes: Optional[str] = None
    receipt: Optional[ReceiptModel] = None


class UpdatePaymentStatusRequest(BaseModel):
    status: str = Field(..., description="pending, confirmed or rejected")


# Response builders; money is rendered as strings at currency precision
def _money(value, currency: Currency) -> str:
    return str(round_amount(value, currency))


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def loan_to_response(loan: Loan, currency: Currency) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "client_id": loan.client_id,
        "owner_id": loan.owner_id,
        "status": loan.status.value,
        "principal": _money(loan.principal, currency),
        "interest_rate": str(loan.interest_rate),
        "term_months": loan.term_months,
        "payment_frequency": loan.payment_frequency.value,
        "start_date": _iso(loan.start_date),
        "payment_amount": _money(loan.payment_amount, currency),
        "total_interest": _money(loan.total_interest, currency),
        "total_amount": _money(loan.total_amount, currency),
        "total_payments": loan.total_payments,
        "paid_amount": _money(loan.paid_amount, currency),
        "remaining_balance": _money(loan.remaining_balance, currency),
        "completed_payments": loan.completed_payments,
        "remaining_payments": loan.remaining_payments,
        "payment_progress": str(round_percentage(loan.payment_progress)),
        "amount_due_for_current_period": _money(loan.amount_due_for_current_period, currency),
        "next_payment_date": _iso(loan.next_payment_date),
        "last_payment_date": _iso(loan.last_payment_date),
        "description": loan.description,
        "notes": loan.notes,
        "currency": currency.code,
        "version": loan.version,
    }


def payment_to_response(payment: Payment, currency: Currency) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "loan_id": payment.loan_id,
        "owner_id": payment.owner_id,
        "amount": _money(payment.amount, currency),
        "payment_date": _iso(payment.payment_date),
        "method": payment.method.value,
        "status": payment.status.value,
        "receipt_image": payment.receipt_image,
        "receipt_missing": payment.receipt_missing,
        "notes": payment.notes,
        "confirmed_at": payment.confirmed_at.isoformat() if payment.confirmed_at else None,
        "version": payment.version,
    }


def schedule_to_response(schedule: List[ScheduledInstallment], currency: Currency) -> List[Dict[str, Any]]:
    return [
        {
            "number": entry.number,
            "due_date": entry.due_date.isoformat(),
            "amount": _money(entry.amount, currency),
            "cumulative_due": _money(entry.cumulative_due, currency),
        }
        for entry in schedule
    ]


def stringify_amounts(data: Dict[str, Any]) -> Dict[str, Any]:
    """Render Decimal and date values of a report as strings"""
    result = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = stringify_amounts(value)
        elif isinstance(value, list):
            result[key] = [stringify_amounts(v) if isinstance(v, dict) else v for v in value]
        elif isinstance(value, date):
            result[key] = value.isoformat()
        elif isinstance(value, (int, str, bool)) or value is None:
            result[key] = value
        else:
            result[key] = str(value)
    return result
