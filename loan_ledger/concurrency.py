"""
Optimistic Concurrency Module

Bounded retry with exponential backoff for units of work that lose a
compare-and-swap race. Only ConflictError is retried.
"""

import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .exceptions import ConflictError
from .logging_config import get_logger, log_action

T = TypeVar("T")

logger = get_logger("loan_ledger.concurrency")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times and how patiently a conflicting unit of work is retried"""
    max_attempts: int = 5
    backoff_seconds: float = 0.01
    max_backoff_seconds: float = 0.25

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Full-jitter exponential delay before retry number `attempt`"""
        ceiling = min(self.max_backoff_seconds, self.backoff_seconds * (2 ** (attempt - 1)))
        return random.uniform(0, ceiling)

    @classmethod
    def from_config(cls, config) -> 'RetryPolicy':
        return cls(
            max_attempts=config.conflict_max_attempts,
            backoff_seconds=config.conflict_backoff_seconds,
            max_backoff_seconds=config.conflict_backoff_max_seconds,
        )


def retry_on_conflict(
    operation: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    resource: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """
    Run `operation` until it commits without a ConflictError.

    The operation must re-read everything it writes on every call, so that a
    retry starts from fresh versions.

    Raises:
        ConflictError: When every attempt conflicted
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except ConflictError as e:
            if attempt >= policy.max_attempts:
                log_action(
                    logger, "error", f"Giving up after {attempt} conflicting attempts",
                    action="retry_exhausted", resource=resource,
                    extra={"attempts": attempt, "last_error": e.message}
                )
                raise ConflictError(
                    f"Concurrent updates kept conflicting after {attempt} attempts; retry later",
                    resource=resource, attempts=attempt
                ) from e

            delay = policy.delay_for(attempt)
            log_action(
                logger, "debug", "Write conflict, retrying",
                action="retry_conflict", resource=resource,
                extra={"attempt": attempt, "delay_seconds": round(delay, 4)}
            )
            sleep(delay)
