"""Unit tests for retry policy."""

from __future__ import annotations

import pytest

from smarthome_sync.transport.retry_policy import RetryPolicy

# Test constants
BASE_DELAY = 1.0
MAX_DELAY = 30.0


def no_jitter(_low: float, _high: float) -> float:
    return 0.0


def full_jitter(_low: float, high: float) -> float:
    return high


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_default_values(self):
        policy = RetryPolicy()
        assert policy.base_delay_seconds == BASE_DELAY
        assert policy.max_delay_seconds == MAX_DELAY
        assert policy.jitter_factor == pytest.approx(0.1)

    def test_exponential_growth(self):
        policy = RetryPolicy(rng=no_jitter)
        assert [policy.get_delay(a) for a in range(6)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    def test_delay_never_exceeds_cap(self):
        policy = RetryPolicy(base_delay_seconds=0.5, max_delay_seconds=5.0)
        for attempt in range(200):
            assert policy.get_delay(attempt) <= 5.0

    def test_jitter_is_subtracted(self):
        policy = RetryPolicy(jitter_factor=0.1, rng=full_jitter)
        assert policy.get_delay(0) == pytest.approx(0.9)
        assert policy.get_delay(10) == pytest.approx(27.0)

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(jitter_factor=0.25)
        for _ in range(100):
            delay = policy.get_delay(3)
            assert 6.0 <= delay <= 8.0

    def test_huge_attempt_does_not_overflow(self):
        policy = RetryPolicy(rng=no_jitter)
        assert policy.get_delay(10_000) == MAX_DELAY

    def test_negative_attempt_treated_as_first(self):
        policy = RetryPolicy(rng=no_jitter)
        assert policy.get_delay(-3) == BASE_DELAY

    def test_repr(self):
        assert "max_delay=30.0s" in repr(RetryPolicy())
