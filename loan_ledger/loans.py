"""
Loan Aggregate Service Module

Loan origination, term edits and deletion. Terms run through the amortization
calculator; ledger fields are owned by the reconciler. Client aggregates are
adjusted here, after the loan write, and never by the reconciler.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .calculator import PaymentFrequency, ScheduledInstallment, build_schedule, compute, validate_terms
from .clients import ClientAggregateUpdater
from .concurrency import RetryPolicy, retry_on_conflict
from .currency import Number
from .exceptions import AggregateSyncError, ValidationError
from .logging_config import get_logger, log_action
from .models import LOANS_TABLE, PAYMENTS_TABLE, Loan, LoanStatus, ZERO
from .reconciler import LedgerReconciler
from .storage import StorageInterface


class LoanManager:
    """
    Loan Aggregate Service
    """

    def __init__(
        self,
        storage: StorageInterface,
        reconciler: LedgerReconciler,
        client_aggregates: ClientAggregateUpdater,
        audit_trail: Optional[AuditTrail] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.storage = storage
        self.reconciler = reconciler
        self.client_aggregates = client_aggregates
        self.audit_trail = audit_trail
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = get_logger("loan_ledger.loans")

    def create_loan(
        self,
        client_id: str,
        owner_id: str,
        principal: Number,
        interest_rate: Number,
        term_months: int,
        payment_frequency: Union[PaymentFrequency, str] = PaymentFrequency.MONTHLY,
        start_date: Optional[date] = None,
        description: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Loan:
        """
        Originate a loan and add it to the client's aggregates.

        Args:
            client_id: Borrower
            owner_id: Lender account that owns the loan
            principal: Amount lent, > 0
            interest_rate: Monthly interest percentage, >= 0
            term_months: Whole months, > 0
            payment_frequency: weekly, biweekly or monthly
            start_date: First due date (default today)

        Returns:
            The persisted Loan

        Raises:
            ValidationError: On invalid terms (nothing is written)
            AggregateSyncError: The loan was written but the client aggregate update failed
        """
        if not client_id:
            raise ValidationError("client_id is required", field="client_id")
        if not owner_id:
            raise ValidationError("owner_id is required", field="owner_id")

        principal, interest_rate, term_months, frequency = validate_terms(
            principal, interest_rate, term_months, payment_frequency
        )
        summary = compute(principal, interest_rate, term_months, frequency)
        start_date = start_date or date.today()
        now = datetime.now(timezone.utc)

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            owner_id=owner_id,
            principal=principal,
            interest_rate=interest_rate,
            term_months=term_months,
            payment_frequency=frequency,
            start_date=start_date,
            payment_amount=summary.payment_amount,
            total_interest=summary.total_interest,
            total_amount=summary.total_amount,
            total_payments=summary.total_payments,
            paid_amount=ZERO,
            remaining_balance=summary.total_amount,
            completed_payments=0,
            payment_progress=ZERO,
            amount_due_for_current_period=summary.payment_amount,
            next_payment_date=start_date,
            status=LoanStatus.ACTIVE,
            client_debt_contribution=summary.total_amount,
            description=description,
            notes=notes,
        )

        with self.storage.atomic():
            loan.version = self.storage.compare_and_swap(LOANS_TABLE, loan.id, loan.to_dict(), None)
            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.LOAN_CREATED, "loan", loan.id,
                    {
                        "client_id": client_id,
                        "principal": loan.principal,
                        "interest_rate": loan.interest_rate,
                        "term_months": term_months,
                        "payment_frequency": loan.payment_frequency.value,
                        "total_amount": loan.total_amount,
                    },
                    user_id=owner_id
                )

        log_action(
            self.logger, "info", "Loan created",
            user_id=owner_id, action="create_loan", resource=f"loan:{loan.id}",
            extra={"client_id": client_id, "total_amount": str(loan.total_amount),
                   "total_payments": loan.total_payments}
        )

        self._sync_client_aggregates(loan, loans_delta=1, debt_delta=loan.client_debt_contribution)
        return loan

    def _sync_client_aggregates(self, loan: Loan, loans_delta: int, debt_delta: Decimal) -> None:
        try:
            self.client_aggregates.increment_loan_count(loan.client_id, loans_delta)
            self.client_aggregates.adjust_total_debt(loan.client_id, debt_delta)
        except Exception as e:
            log_action(
                self.logger, "error", "Client aggregate update failed after loan write",
                action="aggregate_sync_failed", resource=f"loan:{loan.id}",
                extra={"client_id": loan.client_id, "loans_delta": loans_delta,
                       "debt_delta": str(debt_delta), "error": str(e)}
            )
            raise AggregateSyncError(
                f"Loan {loan.id} was written but client {loan.client_id} aggregates were not updated",
                loan_id=loan.id, client_id=loan.client_id, cause=e
            ) from e

    def get_loan(self, loan_id: str) -> Loan:
        """Get a loan by ID, raising NotFoundError if missing"""
        return self.reconciler.load_loan(loan_id)

    def list_loans(
        self,
        client_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        status: Optional[Union[LoanStatus, str]] = None
    ) -> List[Loan]:
        """Loans matching the given filters, newest first"""
        filters: Dict[str, Any] = {}
        if client_id:
            filters["client_id"] = client_id
        if owner_id:
            filters["owner_id"] = owner_id
        if status is not None:
            try:
                filters["status"] = LoanStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown loan status '{status}'", field="status")

        records = self.storage.query(LOANS_TABLE, filters, order_by="created_at", descending=True)
        return [Loan.from_dict(data) for data in records]

    def get_schedule(self, loan_id: str) -> List[ScheduledInstallment]:
        """Equal-installment repayment plan for a loan's current terms"""
        loan = self.get_loan(loan_id)
        summary = compute(loan.principal, loan.interest_rate, loan.term_months, loan.payment_frequency)
        return build_schedule(summary, loan.start_date, loan.payment_frequency)

    def update_loan_terms(
        self,
        loan_id: str,
        principal: Optional[Number] = None,
        interest_rate: Optional[Number] = None,
        term_months: Optional[int] = None,
        payment_frequency: Optional[Union[PaymentFrequency, str]] = None,
        start_date: Optional[date] = None,
        description: Optional[str] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Edit a loan's terms and re-derive its ledger from the existing paid amount.

        The paid amount is never reset. Changing any financial term re-runs the
        calculator. Changing the start date reschedules the next due date.
        Client aggregates are not touched.

        Raises:
            ValidationError: On invalid terms (nothing is written)
            NotFoundError: Unknown loan
            ConflictError: Concurrent writers kept winning
        """
        def attempt() -> Loan:
            with self.storage.atomic():
                loan = self.reconciler.load_loan(loan_id)
                expected_version = loan.version
                changes: Dict[str, Any] = {}

                new_principal, new_rate, new_term, new_frequency = validate_terms(
                    loan.principal if principal is None else principal,
                    loan.interest_rate if interest_rate is None else interest_rate,
                    loan.term_months if term_months is None else term_months,
                    loan.payment_frequency if payment_frequency is None else payment_frequency,
                )
                summary = compute(new_principal, new_rate, new_term, new_frequency)

                if new_principal != loan.principal:
                    changes["principal"] = {"old": loan.principal, "new": new_principal}
                if new_rate != loan.interest_rate:
                    changes["interest_rate"] = {"old": loan.interest_rate, "new": new_rate}
                if new_term != loan.term_months:
                    changes["term_months"] = {"old": loan.term_months, "new": new_term}
                if new_frequency != loan.payment_frequency:
                    changes["payment_frequency"] = {"old": loan.payment_frequency.value,
                                                    "new": new_frequency.value}

                reschedule = False
                if start_date is not None and start_date != loan.start_date:
                    changes["start_date"] = {"old": loan.start_date, "new": start_date}
                    loan.start_date = start_date
                    reschedule = True
                if description is not None and description != loan.description:
                    changes["description"] = True
                    loan.description = description
                if notes is not None and notes != loan.notes:
                    changes["notes"] = True
                    loan.notes = notes

                if not changes:
                    return loan

                loan.principal = new_principal
                loan.interest_rate = new_rate
                loan.term_months = new_term
                loan.payment_frequency = new_frequency
                loan.payment_amount = summary.payment_amount
                loan.total_interest = summary.total_interest
                loan.total_amount = summary.total_amount
                loan.total_payments = summary.total_payments

                update = self.reconciler.rederive(loan, reschedule=reschedule)
                update.apply_to(loan)
                loan.updated_at = datetime.now(timezone.utc)
                loan.version = self.storage.compare_and_swap(
                    LOANS_TABLE, loan.id, loan.to_dict(), expected_version
                )

                if self.audit_trail:
                    self.audit_trail.log_event(
                        AuditEventType.LOAN_TERMS_UPDATED, "loan", loan.id,
                        {
                            "changes": changes,
                            "total_amount": loan.total_amount,
                            "remaining_balance": loan.remaining_balance,
                            "status": loan.status.value,
                        },
                        user_id=user_id
                    )
                    if update.became_completed:
                        self.audit_trail.log_event(
                            AuditEventType.LOAN_COMPLETED, "loan", loan.id,
                            {"paid_amount": loan.paid_amount, "reason": "terms_updated"},
                            user_id=user_id
                        )

                log_action(
                    self.logger, "info", "Loan terms updated",
                    user_id=user_id, action="update_loan_terms", resource=f"loan:{loan.id}",
                    extra={"fields": sorted(changes), "status": loan.status.value}
                )
                return loan

        return retry_on_conflict(attempt, self.retry_policy, resource=f"loan:{loan_id}")

    def delete_loan(self, loan_id: str, user_id: Optional[str] = None) -> Loan:
        """
        Delete a loan together with all of its payments, then reverse its
        contribution to the client's aggregates.

        Raises:
            NotFoundError: Unknown loan
            AggregateSyncError: The loan was deleted but the client aggregate update failed
        """
        with self.storage.atomic():
            loan = self.reconciler.load_loan(loan_id)
            payments = self.storage.find(PAYMENTS_TABLE, {"loan_id": loan_id})
            for payment in payments:
                self.storage.delete(PAYMENTS_TABLE, payment["id"])
            self.storage.delete(LOANS_TABLE, loan_id)

            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.LOAN_DELETED, "loan", loan_id,
                    {
                        "client_id": loan.client_id,
                        "paid_amount": loan.paid_amount,
                        "status": loan.status.value,
                        "payments_deleted": len(payments),
                    },
                    user_id=user_id
                )

        log_action(
            self.logger, "info", "Loan deleted",
            user_id=user_id, action="delete_loan", resource=f"loan:{loan_id}",
            extra={"client_id": loan.client_id, "payments_deleted": len(payments)}
        )

        self._sync_client_aggregates(loan, loans_delta=-1, debt_delta=-loan.client_debt_contribution)
        return loan
