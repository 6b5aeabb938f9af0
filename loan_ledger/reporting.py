"""
Reporting Module

Read-only portfolio and per-loan payment summaries for dashboards. Amounts
are rounded to currency precision here and only here.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from .currency import Currency, round_amount, round_percentage
from .models import (
    LOANS_TABLE, PAYMENTS_TABLE, Loan, LoanStatus, Payment, PaymentStatus, ZERO
)
from .reconciler import HUNDRED
from .storage import StorageInterface
from .exceptions import NotFoundError


class ReportingService:
    """
    Portfolio and payment summaries over the loan and payment tables
    """

    def __init__(self, storage: StorageInterface, currency: Currency = Currency.DOP):
        self.storage = storage
        self.currency = currency

    def portfolio_summary(self, owner_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Loan portfolio statistics, optionally limited to one owner

        Returns:
            Dictionary with loan counts by status, total lent (sum of
            principal), total recovered (sum of paid amounts), pending
            collection (sum of remaining balances) and clients with loans
        """
        filters = {"owner_id": owner_id} if owner_id else {}
        loans = [Loan.from_dict(data) for data in self.storage.find(LOANS_TABLE, filters)]

        counts = {status.value: 0 for status in LoanStatus}
        total_lent = ZERO
        total_recovered = ZERO
        pending_collection = ZERO
        clients = set()

        for loan in loans:
            counts[loan.status.value] += 1
            total_lent += loan.principal
            total_recovered += loan.paid_amount
            pending_collection += loan.remaining_balance
            clients.add(loan.client_id)

        expected = total_recovered + pending_collection
        recovery_rate = total_recovered / expected * HUNDRED if expected > ZERO else ZERO

        return {
            "total_loans": len(loans),
            "active_loans": counts[LoanStatus.ACTIVE.value],
            "late_loans": counts[LoanStatus.LATE.value],
            "completed_loans": counts[LoanStatus.COMPLETED.value],
            "total_lent": round_amount(total_lent, self.currency),
            "total_recovered": round_amount(total_recovered, self.currency),
            "pending_collection": round_amount(pending_collection, self.currency),
            "recovery_rate": round_percentage(recovery_rate),
            "clients_with_loans": len(clients),
            "currency": self.currency.code,
        }

    def payment_summary(self, loan_id: str, recent: int = 3) -> Dict[str, Any]:
        """Confirmed and pending totals for a loan plus its most recent payments"""
        if not self.storage.exists(LOANS_TABLE, loan_id):
            raise NotFoundError(f"Loan {loan_id} not found", loan_id=loan_id)

        records = self.storage.query(
            PAYMENTS_TABLE, {"loan_id": loan_id}, order_by="payment_date", descending=True
        )
        payments = [Payment.from_dict(data) for data in records]

        totals: Dict[str, Decimal] = {status.value: ZERO for status in PaymentStatus}
        counts: Dict[str, int] = {status.value: 0 for status in PaymentStatus}
        for payment in payments:
            totals[payment.status.value] += payment.amount
            counts[payment.status.value] += 1

        return {
            "loan_id": loan_id,
            "confirmed_total": round_amount(totals[PaymentStatus.CONFIRMED.value], self.currency),
            "pending_total": round_amount(totals[PaymentStatus.PENDING.value], self.currency),
            "counts": counts,
            "recent_payments": self._recent(payments, recent),
            "currency": self.currency.code,
        }

    def _recent(self, payments: List[Payment], limit: int) -> List[Dict[str, Any]]:
        return [
            {
                "id": payment.id,
                "amount": round_amount(payment.amount, self.currency),
                "payment_date": payment.payment_date,
                "method": payment.method.value,
                "status": payment.status.value,
            }
            for payment in payments[:max(0, limit)]
        ]
