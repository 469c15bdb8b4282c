"""Exponential backoff policy for broker reconnect attempts."""

from __future__ import annotations

import random
from collections.abc import Callable


class RetryPolicy:
    """Exponential backoff retry policy with jitter.

    Provides retry delay calculation using exponential backoff with random
    jitter to prevent synchronized reconnect storms across client instances.
    Jitter is subtracted from the capped delay, so no delay ever exceeds the cap.
    """

    def __init__(
        self,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        jitter_factor: float = 0.1,
        rng: Callable[[float, float], float] | None = None,
    ):
        """Initialize retry policy.

        Args:
            base_delay_seconds: Base delay for first retry (default: 1.0s)
            max_delay_seconds: Maximum delay cap (default: 30.0s)
            jitter_factor: Jitter as fraction of delay (default: 0.1 = 10%)
            rng: uniform(a, b) source, injectable for deterministic tests
        """
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_factor = jitter_factor
        self._uniform: Callable[[float, float], float] = rng or random.uniform

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt.

        Formula: min(base_delay * (2 ** attempt), max_delay) - jitter
        Jitter: random value between 0 and delay * jitter_factor

        Args:
            attempt: Retry attempt number (0-indexed, so attempt=0 is first retry)

        Returns:
            Delay in seconds, within [capped * (1 - jitter_factor), capped]
        """
        # Exponent bounded so huge attempt counts cannot overflow
        delay = self.base_delay_seconds * (2 ** min(max(attempt, 0), 32))

        # Cap at maximum delay
        delay = min(delay, self.max_delay_seconds)

        jitter = self._uniform(0, delay * self.jitter_factor)
        return delay - jitter

    def __repr__(self) -> str:
        """String representation of retry policy."""
        return (
            f"RetryPolicy(base_delay={self.base_delay_seconds}s, "
            f"max_delay={self.max_delay_seconds}s, "
            f"jitter_factor={self.jitter_factor})"
        )
