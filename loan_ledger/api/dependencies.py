"""
Service container and request dependencies
"""

from typing import Optional

from fastapi import Header, HTTPException, status

from ..audit import AuditTrail
from ..clients import StorageClientAggregates
from ..concurrency import RetryPolicy
from ..config import LedgerConfig, get_config
from ..currency import Currency
from ..loans import LoanManager
from ..overdue import OverdueMonitor
from ..payments import PaymentStore
from ..reconciler import LedgerReconciler
from ..reporting import ReportingService
from ..storage import StorageInterface, create_storage
from ..uploads import HttpUploadService, InMemoryUploadService, UploadService


class LedgerSystem:
    """Loan ledger with all components initialized"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        upload_service: Optional[UploadService] = None
    ):
        self.config = config or get_config()
        self.currency = Currency.from_code(self.config.currency)
        self.retry_policy = RetryPolicy.from_config(self.config)

        self.storage = storage or create_storage(self.config.storage_backend, self.config.database_path)
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.upload_service = upload_service or self._create_upload_service()

        self.reconciler = LedgerReconciler(
            self.storage, self.audit_trail, self.currency, self.retry_policy
        )
        self.client_aggregates = StorageClientAggregates(
            self.storage, self.audit_trail, self.retry_policy
        )
        self.loan_manager = LoanManager(
            self.storage, self.reconciler, self.client_aggregates,
            self.audit_trail, self.retry_policy
        )
        self.payment_store = PaymentStore(
            self.storage, self.reconciler,
            upload_service=self.upload_service,
            audit_trail=self.audit_trail,
            retry_policy=self.retry_policy,
            upload_folder=self.config.upload_folder,
            receipt_upload_required=self.config.receipt_upload_required
        )
        self.overdue_monitor = OverdueMonitor(self.storage, self.audit_trail, self.retry_policy)
        self.reporting = ReportingService(self.storage, self.currency)

    def _create_upload_service(self) -> UploadService:
        """Create the receipt upload client based on configuration"""
        # No URL configured: keep receipts in memory (development)
        if not self.config.upload_url:
            return InMemoryUploadService()

        return HttpUploadService(
            base_url=self.config.upload_url,
            api_key=self.config.upload_api_key or None,
            timeout=self.config.upload_timeout
        )

    def close(self) -> None:
        self.upload_service.close()
        self.storage.close()


_ledger_system: Optional[LedgerSystem] = None


def get_ledger_system() -> LedgerSystem:
    """Dependency returning the process-wide ledger system, created on first use"""
    global _ledger_system
    if _ledger_system is None:
        _ledger_system = LedgerSystem()
    return _ledger_system


def get_owner_id(x_owner_id: Optional[str] = Header(None)) -> str:
    """Authenticated owner, as forwarded by the gateway in X-Owner-Id"""
    if not x_owner_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Owner-Id header is required")
    return x_owner_id
