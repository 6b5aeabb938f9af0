"""
Tests for client aggregates: incremental adjustment and rebuild from loans
"""

from decimal import Decimal
from datetime import date

from loan_ledger.audit import AuditTrail, AuditEventType
from loan_ledger.clients import StorageClientAggregates
from loan_ledger.concurrency import RetryPolicy
from loan_ledger.loans import LoanManager
from loan_ledger.models import CLIENTS_TABLE
from loan_ledger.reconciler import LedgerReconciler
from loan_ledger.storage import InMemoryStorage


NO_WAIT = RetryPolicy(max_attempts=3, backoff_seconds=0, max_backoff_seconds=0)


class TestClientAggregates:

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.aggregates = StorageClientAggregates(self.storage, self.audit_trail, NO_WAIT)
        self.loan_manager = LoanManager(
            self.storage, LedgerReconciler(self.storage, self.audit_trail, retry_policy=NO_WAIT),
            self.aggregates, self.audit_trail, NO_WAIT
        )

    def create_loan(self, client_id, principal='1000'):
        return self.loan_manager.create_loan(
            client_id=client_id, owner_id="OWNER001",
            principal=principal, interest_rate='10', term_months=12,
            start_date=date(2024, 1, 15)
        )

    def test_first_adjustment_creates_record(self):
        assert self.aggregates.get_aggregates("CLIENT001") is None

        self.aggregates.increment_loan_count("CLIENT001", 1)
        self.aggregates.adjust_total_debt("CLIENT001", Decimal('150.50'))

        aggregate = self.aggregates.get_aggregates("CLIENT001")
        assert aggregate.loans == 1
        assert aggregate.total_debt == Decimal('150.50')
        assert aggregate.version == 2

    def test_adjustments_accumulate(self):
        self.aggregates.increment_loan_count("CLIENT001", 2)
        self.aggregates.increment_loan_count("CLIENT001", -1)
        self.aggregates.adjust_total_debt("CLIENT001", Decimal('100'))
        self.aggregates.adjust_total_debt("CLIENT001", Decimal('-40'))

        aggregate = self.aggregates.get_aggregates("CLIENT001")
        assert aggregate.loans == 1
        assert aggregate.total_debt == Decimal('60')

    def test_rebuild_heals_drift(self):
        """Loans are the source of truth"""
        self.create_loan("CLIENT001")
        self.create_loan("CLIENT001", principal='500')
        self.aggregates.increment_loan_count("CLIENT001", 5)
        self.aggregates.adjust_total_debt("CLIENT001", Decimal('-9999'))

        aggregate = self.aggregates.rebuild("CLIENT001")

        assert aggregate.loans == 2
        assert aggregate.total_debt == Decimal('3300')
        assert self.aggregates.get_aggregates("CLIENT001").total_debt == Decimal('3300')

        event = self.audit_trail.get_events_by_type(AuditEventType.CLIENT_AGGREGATES_REBUILT)[0]
        assert event.entity_id == "CLIENT001"
        assert event.metadata["loans_before"] == 7
        assert event.metadata["loans"] == 2

    def test_rebuild_for_client_without_record(self):
        aggregate = self.aggregates.rebuild("NOBODY")
        assert aggregate.loans == 0
        assert aggregate.total_debt == Decimal('0')
        assert self.storage.exists(CLIENTS_TABLE, "NOBODY")

    def test_rebuild_all(self):
        self.create_loan("CLIENT001")
        self.create_loan("CLIENT002")
        # Stale record for a client whose loans are gone
        self.aggregates.increment_loan_count("CLIENT003", 1)

        rebuilt = {a.id: a for a in self.aggregates.rebuild_all()}

        assert set(rebuilt) == {"CLIENT001", "CLIENT002", "CLIENT003"}
        assert rebuilt["CLIENT001"].loans == 1
        assert rebuilt["CLIENT003"].loans == 0
        assert rebuilt["CLIENT003"].total_debt == Decimal('0')

    def test_clients_are_independent(self):
        self.create_loan("CLIENT001")
        self.create_loan("CLIENT002", principal='2000')

        assert self.aggregates.get_aggregates("CLIENT001").total_debt == Decimal('2200')
        assert self.aggregates.get_aggregates("CLIENT002").total_debt == Decimal('4400')
