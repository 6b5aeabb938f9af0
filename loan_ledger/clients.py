"""
Client Aggregate Module

Denormalized per-client projections over loans (loan count and total debt).
They are adjusted by the loan service after loan creation and deletion, and
can be recomputed from the loans themselves to heal drift.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime, timezone
from typing import List, Optional

from .audit import AuditTrail, AuditEventType
from .concurrency import RetryPolicy, retry_on_conflict
from .logging_config import get_logger, log_action
from .models import CLIENTS_TABLE, LOANS_TABLE, ClientAggregate, Loan, ZERO
from .storage import StorageInterface


class ClientAggregateUpdater(ABC):
    """Consumer of loan create/delete deltas"""

    @abstractmethod
    def increment_loan_count(self, client_id: str, delta: int) -> None:
        pass

    @abstractmethod
    def adjust_total_debt(self, client_id: str, delta: Decimal) -> None:
        pass


class StorageClientAggregates(ClientAggregateUpdater):
    """Client aggregates kept in the `clients` table with versioned writes"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = get_logger("loan_ledger.clients")

    def increment_loan_count(self, client_id: str, delta: int) -> None:
        self._adjust(client_id, loans_delta=delta, debt_delta=ZERO)

    def adjust_total_debt(self, client_id: str, delta: Decimal) -> None:
        self._adjust(client_id, loans_delta=0, debt_delta=delta)

    def get_aggregates(self, client_id: str) -> Optional[ClientAggregate]:
        data = self.storage.load(CLIENTS_TABLE, client_id)
        return ClientAggregate.from_dict(data) if data else None

    def _adjust(self, client_id: str, loans_delta: int, debt_delta: Decimal) -> None:
        def attempt() -> ClientAggregate:
            with self.storage.atomic():
                now = datetime.now(timezone.utc)
                data = self.storage.load(CLIENTS_TABLE, client_id)
                if data:
                    aggregate = ClientAggregate.from_dict(data)
                    expected_version = aggregate.version
                else:
                    aggregate = ClientAggregate(id=client_id, created_at=now, updated_at=now)
                    expected_version = None

                aggregate.loans += loans_delta
                aggregate.total_debt += debt_delta
                aggregate.updated_at = now
                aggregate.version = self.storage.compare_and_swap(
                    CLIENTS_TABLE, client_id, aggregate.to_dict(), expected_version
                )
                return aggregate

        aggregate = retry_on_conflict(attempt, self.retry_policy, resource=f"client:{client_id}")

        if aggregate.loans < 0 or aggregate.total_debt < ZERO:
            log_action(
                self.logger, "warning", "Client aggregate went negative; a rebuild is needed",
                action="aggregate_drift", resource=f"client:{client_id}",
                extra={"loans": aggregate.loans, "total_debt": str(aggregate.total_debt)}
            )
        else:
            log_action(
                self.logger, "debug", "Client aggregate adjusted",
                action="adjust_aggregate", resource=f"client:{client_id}",
                extra={"loans_delta": loans_delta, "debt_delta": str(debt_delta)}
            )

    def rebuild(self, client_id: str) -> ClientAggregate:
        """Recompute a client's aggregate from its loans (source of truth)"""
        def attempt() -> ClientAggregate:
            with self.storage.atomic():
                loans = [Loan.from_dict(d) for d in self.storage.find(LOANS_TABLE, {"client_id": client_id})]
                now = datetime.now(timezone.utc)
                data = self.storage.load(CLIENTS_TABLE, client_id)
                if data:
                    aggregate = ClientAggregate.from_dict(data)
                    expected_version = aggregate.version
                    before = (aggregate.loans, aggregate.total_debt)
                else:
                    aggregate = ClientAggregate(id=client_id, created_at=now, updated_at=now)
                    expected_version = None
                    before = (0, ZERO)

                aggregate.loans = len(loans)
                aggregate.total_debt = sum((loan.client_debt_contribution for loan in loans), ZERO)
                aggregate.updated_at = now
                aggregate.version = self.storage.compare_and_swap(
                    CLIENTS_TABLE, client_id, aggregate.to_dict(), expected_version
                )

                if self.audit_trail:
                    self.audit_trail.log_event(
                        AuditEventType.CLIENT_AGGREGATES_REBUILT, "client", client_id,
                        {
                            "loans_before": before[0], "total_debt_before": before[1],
                            "loans": aggregate.loans, "total_debt": aggregate.total_debt,
                        }
                    )
                return aggregate

        return retry_on_conflict(attempt, self.retry_policy, resource=f"client:{client_id}")

    def rebuild_all(self) -> List[ClientAggregate]:
        """Reconciliation job: rebuild every client that has loans or an aggregate record"""
        client_ids = {d['client_id'] for d in self.storage.load_all(LOANS_TABLE)}
        client_ids.update(d['id'] for d in self.storage.load_all(CLIENTS_TABLE))
        rebuilt = [self.rebuild(client_id) for client_id in sorted(client_ids)]
        self.logger.info(f"Rebuilt aggregates for {len(rebuilt)} clients")
        return rebuilt
