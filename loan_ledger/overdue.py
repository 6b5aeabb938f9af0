"""
Overdue Monitor Module

Scheduled re-evaluation of loans against the calendar. The only transition it
ever makes is active -> late; returning to active and completing a loan belong
to the reconciler.
"""

from datetime import date, datetime, timezone
from typing import List, Optional

from .audit import AuditTrail, AuditEventType
from .concurrency import RetryPolicy, retry_on_conflict
from .logging_config import get_logger, log_action
from .models import LOANS_TABLE, Loan, LoanStatus, ZERO
from .storage import StorageInterface


class OverdueMonitor:
    """Marks active loans late once their next due date has passed"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = get_logger("loan_ledger.overdue")

    @staticmethod
    def is_overdue(loan: Loan, as_of: date) -> bool:
        return (
            loan.status == LoanStatus.ACTIVE
            and loan.next_payment_date is not None
            and loan.next_payment_date < as_of
            and loan.remaining_balance > ZERO
        )

    def mark_overdue(self, as_of: Optional[date] = None) -> List[str]:
        """
        Move every overdue active loan to late.

        Safe to run repeatedly: loans already late are left alone.

        Returns:
            IDs of the loans that changed in this run
        """
        as_of = as_of or date.today()
        candidates = [
            Loan.from_dict(data)
            for data in self.storage.find(LOANS_TABLE, {"status": LoanStatus.ACTIVE})
        ]

        changed = []
        for candidate in candidates:
            if not self.is_overdue(candidate, as_of):
                continue
            if self._mark_late(candidate.id, as_of):
                changed.append(candidate.id)

        self.logger.info(f"Overdue scan as of {as_of.isoformat()}: {len(changed)} loans marked late")
        return changed

    def _mark_late(self, loan_id: str, as_of: date) -> bool:
        def attempt() -> bool:
            with self.storage.atomic():
                data = self.storage.load(LOANS_TABLE, loan_id)
                if not data:
                    return False
                loan = Loan.from_dict(data)
                # Re-check: a payment may have landed since the scan
                if not self.is_overdue(loan, as_of):
                    return False

                expected_version = loan.version
                loan.status = LoanStatus.LATE
                loan.updated_at = datetime.now(timezone.utc)
                loan.version = self.storage.compare_and_swap(
                    LOANS_TABLE, loan.id, loan.to_dict(), expected_version
                )

                if self.audit_trail:
                    self.audit_trail.log_event(
                        AuditEventType.LOAN_MARKED_LATE, "loan", loan.id,
                        {
                            "next_payment_date": loan.next_payment_date,
                            "as_of": as_of,
                            "remaining_balance": loan.remaining_balance,
                        }
                    )
                return True

        marked = retry_on_conflict(attempt, self.retry_policy, resource=f"loan:{loan_id}")
        if marked:
            log_action(
                self.logger, "info", "Loan marked late",
                action="mark_late", resource=f"loan:{loan_id}",
                extra={"as_of": as_of.isoformat()}
            )
        return marked
