"""Error taxonomy for the loan ledger core."""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class ValidationError(LedgerError):
    """Raised for bad loan terms, non-positive amounts or unknown enum values.

    Always raised before any write takes place.
    """


class NotFoundError(LedgerError):
    """Raised when a loan, payment or client id does not exist."""


class IllegalTransitionError(LedgerError):
    """Raised when a record is not in a state that permits the operation."""


class ConflictError(LedgerError):
    """Raised when a versioned write loses a race with another writer."""

    retryable = True


class DependencyError(LedgerError):
    """Raised when an external collaborator (store, upload service) fails."""

    retryable = True

    def __init__(self, message: str, operation: str, cause: Optional[BaseException] = None, **context: Any):
        super().__init__(message, operation=operation, **context)
        self.operation = operation
        self.cause = cause


class AggregateSyncError(DependencyError):
    """Raised when a loan write succeeded but the client aggregate update failed.

    The loan is persisted; the client aggregate needs a rebuild.
    """

    retryable = False

    def __init__(self, message: str, loan_id: str, client_id: str, cause: Optional[BaseException] = None):
        super().__init__(
            message,
            operation="client_aggregate_update",
            cause=cause,
            loan_id=loan_id,
            client_id=client_id,
        )
        self.loan_id = loan_id
        self.client_id = client_id
