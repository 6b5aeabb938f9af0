"""
Ledger Record Models

Loan, Payment and ClientAggregate records as persisted in the document store.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum

from .calculator import PaymentFrequency
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"          # In repayment, not overdue
    LATE = "late"              # Next due date passed without a full installment
    COMPLETED = "completed"    # Fully paid; ledger is closed


class PaymentStatus(Enum):
    """Payment review states"""
    PENDING = "pending"        # Submitted, no ledger effect yet
    CONFIRMED = "confirmed"    # Applied to the loan ledger exactly once
    REJECTED = "rejected"      # Never applied


class PaymentMethod(Enum):
    """How the borrower paid"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"
    OTHER = "other"


ZERO = Decimal('0')

LOANS_TABLE = "loans"
PAYMENTS_TABLE = "payments"
CLIENTS_TABLE = "clients"


@dataclass
class Loan(StorageRecord):
    """Borrowing agreement with its derived terms and ledger state"""
    client_id: str
    owner_id: str

    # Terms
    principal: Decimal
    interest_rate: Decimal              # Monthly percentage, e.g. Decimal('10') for 10%
    term_months: int
    payment_frequency: PaymentFrequency
    start_date: date

    # Derived terms (calculator output, unrounded)
    payment_amount: Decimal
    total_interest: Decimal
    total_amount: Decimal
    total_payments: int

    # Ledger state (reconciler output)
    paid_amount: Decimal = ZERO
    remaining_balance: Decimal = ZERO
    completed_payments: int = 0
    payment_progress: Decimal = ZERO    # Percentage 0-100
    amount_due_for_current_period: Decimal = ZERO
    next_payment_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    status: LoanStatus = LoanStatus.ACTIVE

    # What this loan added to the client's total debt at creation
    client_debt_contribution: Decimal = ZERO

    description: Optional[str] = None
    notes: Optional[str] = None
    version: int = 0

    @property
    def is_completed(self) -> bool:
        return self.status == LoanStatus.COMPLETED

    @property
    def remaining_payments(self) -> int:
        return max(0, self.total_payments - self.completed_payments)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=cls.parse_datetime(data['created_at']),
            updated_at=cls.parse_datetime(data['updated_at']),
            client_id=data['client_id'],
            owner_id=data['owner_id'],
            principal=Decimal(data['principal']),
            interest_rate=Decimal(data['interest_rate']),
            term_months=int(data['term_months']),
            payment_frequency=PaymentFrequency(data['payment_frequency']),
            start_date=cls.parse_date(data['start_date']),
            payment_amount=Decimal(data['payment_amount']),
            total_interest=Decimal(data['total_interest']),
            total_amount=Decimal(data['total_amount']),
            total_payments=int(data['total_payments']),
            paid_amount=Decimal(data.get('paid_amount', '0')),
            remaining_balance=Decimal(data.get('remaining_balance', '0')),
            completed_payments=int(data.get('completed_payments', 0)),
            payment_progress=Decimal(data.get('payment_progress', '0')),
            amount_due_for_current_period=Decimal(data.get('amount_due_for_current_period', '0')),
            next_payment_date=cls.parse_date(data.get('next_payment_date')),
            last_payment_date=cls.parse_date(data.get('last_payment_date')),
            status=LoanStatus(data.get('status', LoanStatus.ACTIVE.value)),
            client_debt_contribution=Decimal(data.get('client_debt_contribution', '0')),
            description=data.get('description'),
            notes=data.get('notes'),
            version=int(data.get('version', 0)),
        )


@dataclass
class Payment(StorageRecord):
    """One payment event against exactly one loan"""
    loan_id: str
    amount: Decimal
    payment_date: date
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    owner_id: Optional[str] = None
    receipt_image: Optional[str] = None   # URL returned by the upload service
    receipt_missing: bool = False         # Receipt supplied but best-effort upload failed
    notes: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        confirmed_at = data.get('confirmed_at')
        return cls(
            id=data['id'],
            created_at=cls.parse_datetime(data['created_at']),
            updated_at=cls.parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Decimal(data['amount']),
            payment_date=cls.parse_date(data['payment_date']),
            method=PaymentMethod(data['method']),
            status=PaymentStatus(data['status']),
            owner_id=data.get('owner_id'),
            receipt_image=data.get('receipt_image'),
            receipt_missing=bool(data.get('receipt_missing', False)),
            notes=data.get('notes'),
            confirmed_at=cls.parse_datetime(confirmed_at) if confirmed_at else None,
            version=int(data.get('version', 0)),
        )


@dataclass
class ClientAggregate(StorageRecord):
    """Denormalized per-client projection over loans"""
    loans: int = 0
    total_debt: Decimal = ZERO
    version: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClientAggregate':
        return cls(
            id=data['id'],
            created_at=cls.parse_datetime(data['created_at']),
            updated_at=cls.parse_datetime(data['updated_at']),
            loans=int(data.get('loans', 0)),
            total_debt=Decimal(data.get('total_debt', '0')),
            version=int(data.get('version', 0)),
        )
