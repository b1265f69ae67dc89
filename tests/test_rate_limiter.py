"""Tests for RateLimiter."""

from __future__ import annotations

import pytest

from pocket_agent_core.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    """Tests for RateLimiter.allow() and cleanup()."""

    def test_allows_up_to_rate(self):
        """Test attempts beyond the rate are refused within a window."""
        limiter = RateLimiter(3, 60, clock=FakeClock())

        results = [limiter.allow("10.0.0.1") for _ in range(4)]

        assert results == [True, True, True, False]

    def test_keys_are_independent(self):
        """Test one peer's attempts do not count against another."""
        limiter = RateLimiter(1, 60, clock=FakeClock())

        assert limiter.allow("a")
        assert limiter.allow("b")
        assert not limiter.allow("a")

    def test_window_refills(self):
        """Test the bucket refills after the window elapses."""
        clock = FakeClock()
        limiter = RateLimiter(1, 60, clock=clock)
        limiter.allow("a")
        assert not limiter.allow("a")

        clock.now += 60

        assert limiter.allow("a")

    def test_cleanup_drops_idle(self):
        """Test buckets idle for two windows are removed."""
        clock = FakeClock()
        limiter = RateLimiter(5, 10, clock=clock)
        limiter.allow("old")
        clock.now += 15
        limiter.allow("fresh")

        clock.now += 10

        assert limiter.cleanup() == 1
        assert len(limiter) == 1

    @pytest.mark.parametrize(("rate", "window"), [(0, 60), (5, 0)])
    def test_invalid(self, rate, window):
        """Test non-positive settings are rejected."""
        with pytest.raises(ValueError):
            RateLimiter(rate, window)
