"""
Retry policy configuration for run-level and action-level retries.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates backoff behavior so the clock (deferred runs) and
the workflow executor (retryable action failures) share one calculation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from typing import TYPE_CHECKING, cast


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for retry behavior.

    Examples:
        # Simple: just specify max attempts (uses standard delays)
        policy = RetryPolicy.with_max_attempts(4)

        # Named policy: predefined sensible defaults
        policy = RetryPolicy.STANDARD

        # Custom policy: full control
        policy = RetryPolicy(
            max_attempts=5,
            initial_delay_ms=60_000,
            max_delay_ms=3_600_000,
            backoff_multiplier=2.0,
        )
    """

    max_attempts: int
    """Maximum number of attempts (including the first try).

    For example, max_attempts = 3 means:
    - Attempt 1: immediate (first try)
    - Attempt 2: after initial_delay
    - Attempt 3: after initial_delay * backoff_multiplier
    """

    initial_delay_ms: int
    """Initial delay before the first retry in milliseconds."""

    max_delay_ms: int
    """Maximum delay between retries in milliseconds (caps exponential backoff)."""

    backoff_multiplier: float
    """Multiplier for exponential backoff.

    Each retry delay is calculated as:
    min(initial_delay * backoff_multiplier^(attempt-1), max_delay)
    """

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
        RUN_LEVEL: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)
        RUN_LEVEL = cast("RetryPolicy", None)

    @classmethod
    def with_max_attempts(cls, max_attempts: int) -> RetryPolicy:
        """
        Create a policy with custom max_attempts (uses standard delays).

        Args:
            max_attempts: Maximum number of attempts

        Returns:
            RetryPolicy with standard delays
        """
        return cls(
            max_attempts=max_attempts,
            initial_delay_ms=60_000,
            max_delay_ms=3_600_000,
            backoff_multiplier=2.0,
        )

    def with_retries(self, max_retries: int) -> RetryPolicy:
        """Same delays, but allowing max_retries retries after the first try."""
        return replace(self, max_attempts=max_retries + 1)

    def delay_for_attempt(self, attempt: int) -> int | None:
        """
        Calculate the delay before the next retry attempt.

        Args:
            attempt: The attempt that just failed (1-indexed)

        Returns:
            Delay in milliseconds before the next retry, or None if no more retries.

        Example:
            policy = RetryPolicy.with_max_attempts(3)
            policy.delay_for_attempt(1)  # 60000
            policy.delay_for_attempt(2)  # 120000
            policy.delay_for_attempt(3)  # None
        """
        if attempt >= self.max_attempts:
            return None

        delay_ms = self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1)
        return int(min(delay_ms, self.max_delay_ms))

    def backoff(self, attempt: int) -> timedelta | None:
        """delay_for_attempt() as a timedelta."""
        delay_ms = self.delay_for_attempt(attempt)
        if delay_ms is None:
            return None
        return timedelta(milliseconds=delay_ms)

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"initial_delay_ms={self.initial_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms}, "
            f"backoff_multiplier={self.backoff_multiplier})"
        )


RetryPolicy.NONE = RetryPolicy(
    max_attempts=1, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0
)

RetryPolicy.STANDARD = RetryPolicy(
    max_attempts=4,
    initial_delay_ms=60_000,  # 1 minute
    max_delay_ms=3_600_000,  # 1 hour
    backoff_multiplier=2.0,
)

RetryPolicy.RUN_LEVEL = RetryPolicy(
    max_attempts=4,
    initial_delay_ms=300_000,  # 5 minutes
    max_delay_ms=21_600_000,  # 6 hours
    backoff_multiplier=3.0,
)
