"""Bounded retry policy for ledger calls."""

import logging
import time
from typing import Callable, Optional, TypeVar

from market_api.errors import LedgerOutcomeUnknown, LedgerTransient, RetryExhausted
from market_api.settings import Settings, get_settings
from market_api.utils.metrics import ledger_retries

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Retry transient ledger failures with exponential backoff.

    Only LedgerTransient is retried. Fatal and unknown ledger errors
    propagate on the first occurrence. Unknown outcomes (timeouts, lost
    responses) are retried only when the caller says the operation is safe
    to repeat (lookups and signing, not submits).
    """

    def __init__(
        self,
        attempts: int = 3,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize retry policy."""
        if attempts < 1:
            raise ValueError("Retry policy needs at least one attempt")
        if base_delay < 0 or multiplier < 1 or max_delay < 0:
            raise ValueError("Retry delays must be non-negative and the multiplier at least 1")
        self.attempts = attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "RetryPolicy":
        """Build the policy from ledger retry settings."""
        settings = settings or get_settings()
        return cls(
            attempts=settings.ledger_retry_attempts,
            base_delay=settings.ledger_retry_base_delay_seconds,
            multiplier=settings.ledger_retry_backoff_multiplier,
            max_delay=settings.ledger_retry_max_delay_seconds,
            sleep=sleep,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def call(
        self,
        operation: Callable[[], T],
        description: str = "ledger call",
        retry_unknown_outcomes: bool = True,
    ) -> T:
        """Run ``operation`` until it succeeds or the attempts run out."""
        last_error: Optional[LedgerTransient] = None
        for attempt in range(1, self.attempts + 1):
            try:
                return operation()
            except RetryExhausted:
                raise
            except LedgerOutcomeUnknown as e:
                if not retry_unknown_outcomes:
                    raise
                last_error = e
            except LedgerTransient as e:
                last_error = e

            if attempt < self.attempts:
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.attempts}), retrying in {delay:.1f}s: {last_error}",
                    extra={"operation": description, "attempt": attempt},
                )
                ledger_retries.labels(operation=description).inc()
                self.sleep(delay)

        raise RetryExhausted(
            f"{description} failed after {self.attempts} attempts: {last_error}",
            last_error=last_error,
            attempts=self.attempts,
        )
