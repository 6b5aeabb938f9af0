"""
Ledger Reconciler Module

The loan ledger state machine. Applies the effect of a confirmed payment (or
the signed delta of a correction) to a loan's stored balance fields,
re-derives the dependent fields and moves the loan's status.

All ledger fields are computed together by a pure function and then written
in a single versioned compare-and-swap, so a loan is never observed with a
balance from one payment and a status from another.
"""

from decimal import Decimal, ROUND_FLOOR
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Optional, Tuple

from .audit import AuditTrail, AuditEventType
from .calculator import due_date_for_period
from .concurrency import RetryPolicy, retry_on_conflict
from .currency import Currency, Number, round_amount, to_decimal
from .exceptions import IllegalTransitionError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .models import LOANS_TABLE, Loan, LoanStatus, ZERO
from .storage import StorageInterface

HUNDRED = Decimal('100')


@dataclass(frozen=True)
class LedgerUpdate:
    """Every ledger field of a loan after one reconciliation step"""
    paid_amount: Decimal
    remaining_balance: Decimal
    completed_payments: int
    payment_progress: Decimal
    amount_due_for_current_period: Decimal
    next_payment_date: date
    status: LoanStatus
    last_payment_date: Optional[date]
    previous_status: LoanStatus
    previous_completed_payments: int

    @property
    def became_completed(self) -> bool:
        return self.status == LoanStatus.COMPLETED and self.previous_status != LoanStatus.COMPLETED

    def apply_to(self, loan: Loan) -> None:
        """Write all ledger fields onto the loan together"""
        loan.paid_amount = self.paid_amount
        loan.remaining_balance = self.remaining_balance
        loan.completed_payments = self.completed_payments
        loan.payment_progress = self.payment_progress
        loan.amount_due_for_current_period = self.amount_due_for_current_period
        loan.next_payment_date = self.next_payment_date
        loan.status = self.status
        loan.last_payment_date = self.last_payment_date


class LedgerReconciler:
    """
    Applies confirmed payments to loan ledgers.

    Whole payment periods are counted against the billed installment, i.e. the
    payment amount rounded to currency precision, so a borrower who pays the
    displayed installment has completed that period.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        currency: Currency = Currency.DOP,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.currency = currency
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = get_logger("loan_ledger.reconciler")

    # Pure computation

    def count_completed_periods(self, paid_amount: Decimal, payment_amount: Decimal) -> int:
        """floor(paid / installment) against the billed installment"""
        installment = round_amount(payment_amount, self.currency)
        if installment <= ZERO:
            installment = payment_amount
        return int((paid_amount / installment).to_integral_value(rounding=ROUND_FLOOR))

    def apply_confirmed_payment(
        self,
        loan: Loan,
        delta: Number,
        payment_date: Optional[date] = None
    ) -> LedgerUpdate:
        """
        Compute the ledger after applying `delta` to the loan's paid amount.

        `delta` is the full amount on first confirmation, or new minus old
        amount when an already-confirmed payment is corrected.

        Raises:
            IllegalTransitionError: If the loan is already completed
            ValidationError: If the delta is not a number or would make the paid amount negative
        """
        try:
            delta = to_decimal(delta)
        except ValueError as e:
            raise ValidationError(str(e), field="amount")

        if loan.status == LoanStatus.COMPLETED:
            log_action(
                self.logger, "warning", "Rejected ledger mutation on completed loan",
                action="reconcile_rejected", resource=f"loan:{loan.id}",
                extra={"delta": str(delta), "paid_amount": str(loan.paid_amount)}
            )
            raise IllegalTransitionError(
                f"Loan {loan.id} is completed; its ledger no longer accepts payments",
                loan_id=loan.id
            )

        new_paid_amount = loan.paid_amount + delta
        if new_paid_amount < ZERO:
            raise ValidationError(
                f"Payment correction would make the paid amount negative ({new_paid_amount})",
                loan_id=loan.id, delta=delta
            )

        if new_paid_amount > loan.total_amount:
            log_action(
                self.logger, "warning", "Payment exceeds loan total",
                action="overpayment", resource=f"loan:{loan.id}",
                extra={"overpaid_by": str(new_paid_amount - loan.total_amount)}
            )

        remaining_balance, completed_payments, payment_progress, amount_due = self._derive(
            loan, new_paid_amount
        )

        if remaining_balance <= ZERO:
            status = LoanStatus.COMPLETED
        elif loan.status == LoanStatus.LATE and delta > ZERO:
            status = LoanStatus.ACTIVE
        else:
            status = loan.status

        if completed_payments != loan.completed_payments or loan.next_payment_date is None:
            # Due date follows whole periods paid, counted from the start date
            next_payment_date = due_date_for_period(
                loan.start_date, loan.payment_frequency, completed_payments
            )
        else:
            next_payment_date = loan.next_payment_date

        last_payment_date = loan.last_payment_date
        if payment_date and delta > ZERO and (last_payment_date is None or payment_date > last_payment_date):
            last_payment_date = payment_date

        return LedgerUpdate(
            paid_amount=new_paid_amount,
            remaining_balance=remaining_balance,
            completed_payments=completed_payments,
            payment_progress=payment_progress,
            amount_due_for_current_period=amount_due,
            next_payment_date=next_payment_date,
            status=status,
            last_payment_date=last_payment_date,
            previous_status=loan.status,
            previous_completed_payments=loan.completed_payments,
        )

    def rederive(self, loan: Loan, reschedule: bool = False) -> LedgerUpdate:
        """
        Re-derive ledger fields from the loan's current paid amount.

        Used after the loan's terms changed. The paid amount is never touched.
        The next due date is rebuilt from the start date when the number of
        completed periods changed or `reschedule` is set.
        """
        remaining_balance, completed_payments, payment_progress, amount_due = self._derive(
            loan, loan.paid_amount
        )

        if remaining_balance <= ZERO:
            status = LoanStatus.COMPLETED
        elif loan.status == LoanStatus.COMPLETED:
            status = LoanStatus.ACTIVE
        else:
            status = loan.status

        if reschedule or completed_payments != loan.completed_payments or loan.next_payment_date is None:
            next_payment_date = due_date_for_period(
                loan.start_date, loan.payment_frequency, completed_payments
            )
        else:
            next_payment_date = loan.next_payment_date

        return LedgerUpdate(
            paid_amount=loan.paid_amount,
            remaining_balance=remaining_balance,
            completed_payments=completed_payments,
            payment_progress=payment_progress,
            amount_due_for_current_period=amount_due,
            next_payment_date=next_payment_date,
            status=status,
            last_payment_date=loan.last_payment_date,
            previous_status=loan.status,
            previous_completed_payments=loan.completed_payments,
        )

    def _derive(self, loan: Loan, paid_amount: Decimal) -> Tuple[Decimal, int, Decimal, Decimal]:
        remaining_balance = max(ZERO, loan.total_amount - paid_amount)

        if loan.payment_amount > ZERO:
            completed_payments = self.count_completed_periods(paid_amount, loan.payment_amount)
        else:
            completed_payments = loan.completed_payments

        if loan.total_amount > ZERO:
            payment_progress = paid_amount / loan.total_amount * HUNDRED
        else:
            payment_progress = ZERO

        amount_due = max(ZERO, loan.payment_amount * (completed_payments + 1) - paid_amount)
        return remaining_balance, completed_payments, payment_progress, amount_due

    # Persistence

    def load_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(LOANS_TABLE, loan_id)
        if not data:
            raise NotFoundError(f"Loan {loan_id} not found", loan_id=loan_id)
        return Loan.from_dict(data)

    def reconcile(
        self,
        loan_id: str,
        delta: Number,
        payment_date: Optional[date] = None,
        payment_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Tuple[Loan, LedgerUpdate]:
        """
        One read-compute-write attempt against the stored loan.

        Meant to run inside the caller's storage.atomic() unit, next to the
        payment write it belongs to.

        Raises:
            ConflictError: If the loan changed between the read and the write
        """
        loan = self.load_loan(loan_id)
        expected_version = loan.version
        update = self.apply_confirmed_payment(loan, delta, payment_date)

        update.apply_to(loan)
        loan.updated_at = datetime.now(timezone.utc)
        loan.version = self.storage.compare_and_swap(
            LOANS_TABLE, loan.id, loan.to_dict(), expected_version
        )

        metadata = {
            "payment_id": payment_id,
            "delta": str(delta),
            "paid_amount": str(update.paid_amount),
            "remaining_balance": str(update.remaining_balance),
            "completed_payments": update.completed_payments,
            "status": update.status.value,
        }
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.LOAN_LEDGER_UPDATED, "loan", loan.id, metadata, user_id=user_id
            )
            if update.became_completed:
                self.audit_trail.log_event(
                    AuditEventType.LOAN_COMPLETED, "loan", loan.id,
                    {"paid_amount": str(update.paid_amount), "payment_id": payment_id},
                    user_id=user_id
                )

        log_action(
            self.logger, "info", "Loan ledger reconciled",
            user_id=user_id, action="reconcile", resource=f"loan:{loan.id}", extra=metadata
        )
        return loan, update

    def apply_payment(
        self,
        loan_id: str,
        delta: Number,
        payment_date: Optional[date] = None,
        payment_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """Reconcile as its own atomic unit, retrying on write conflicts"""
        def attempt() -> Loan:
            with self.storage.atomic():
                loan, _ = self.reconcile(loan_id, delta, payment_date, payment_id, user_id)
                return loan

        return retry_on_conflict(attempt, self.retry_policy, resource=f"loan:{loan_id}")
