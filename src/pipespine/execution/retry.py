"""Retry strategies with bounded exponential backoff.

Used by the connector registrar to ride out transient Kafka Connect
failures (connection refused while the worker boots, 5xx during a
rebalance).

Example:
    >>> from pipespine.execution.retry import ExponentialBackoff
    >>>
    >>> strategy = ExponentialBackoff(max_attempts=5, base_delay=1.0, max_delay=16.0)
    >>> [strategy.next_delay(n) for n in range(5)]
    [1.0, 2.0, 4.0, 8.0, 16.0]
"""

from __future__ import annotations

import random
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TypeVar

from pipespine.core.errors import Cancelled, PipespineError

T = TypeVar("T")


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Zero-based retry number (0 = first retry)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Determine if another attempt should be made.

        Args:
            attempt: Number of attempts made so far
            error: The exception that caused the failure

        Returns:
            True if should retry, False otherwise
        """
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with a cap and optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) [+ jitter]

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 16.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        if attempt >= self.max_attempts:
            return False
        if isinstance(error, PipespineError):
            return error.retryable
        return True


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Tracks retry state and runs a callable under a strategy.

    Waits between attempts happen on ``cancel_event`` so a cancelled run
    interrupts backoff instead of sleeping it out.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_attempts=3, base_delay=0))
        >>> ctx.run(lambda: "ok")
        'ok'
        >>> ctx.attempts
        1
    """

    strategy: RetryStrategy
    cancel_event: threading.Event = field(default_factory=threading.Event)
    on_retry: Callable[[int, Exception, float], None] | None = None
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    @property
    def elapsed_seconds(self) -> float:
        """Total elapsed time since first attempt."""
        return (utcnow() - self.started_at).total_seconds()

    def run(self, func: Callable[[], T]) -> T:
        """Execute ``func`` with retry logic.

        Raises:
            Cancelled: If the cancel event is set before or between attempts
            Exception: The last error once the strategy stops retrying
        """
        while True:
            if self.cancel_event.is_set():
                raise Cancelled("Cancelled before attempt", cause=self.last_error)
            self.attempt += 1
            try:
                return func()
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utcnow()))

                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                if self.cancel_event.wait(delay):
                    raise Cancelled("Cancelled during retry backoff", cause=e) from e
