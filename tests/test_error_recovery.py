"""
Unit tests for retry backoff strategies.
"""

from healrun.error_handling.recovery import (
    ExponentialBackoffStrategy,
    FixedDelayStrategy,
)


class TestExponentialBackoffStrategy:
    """Test exponential backoff."""

    def test_delays(self):
        strategy = ExponentialBackoffStrategy(base_delay_ms=1000, max_delay_ms=30000, multiplier=2.0)

        assert [strategy.get_delay_ms(n) for n in (1, 2, 3)] == [1000, 2000, 4000]

    def test_delay_capped(self):
        strategy = ExponentialBackoffStrategy(base_delay_ms=1000, max_delay_ms=3000)

        assert strategy.get_delay_ms(10) == 3000

    def test_jitter_range(self):
        strategy = ExponentialBackoffStrategy(base_delay_ms=1000, jitter=True)

        for _ in range(20):
            assert 750 <= strategy.get_delay_ms(1) <= 1250

    def test_should_retry(self):
        strategy = ExponentialBackoffStrategy(max_attempts=3)

        assert strategy.should_retry(0) is True
        assert strategy.should_retry(2) is True
        assert strategy.should_retry(3) is False


class TestFixedDelayStrategy:
    """Test fixed waits for throttled services."""

    def test_constant_delay(self):
        strategy = FixedDelayStrategy(delay_ms=10000, max_attempts=2)

        assert strategy.get_delay_ms(1) == strategy.get_delay_ms(2) == 10000
        assert strategy.should_retry(1) is True
        assert strategy.should_retry(2) is False
