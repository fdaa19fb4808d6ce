"""Tests for the token bucket limiter."""

import pytest

from helpers import FakeClock
from modelgate.rate_limiter import LimiterConfig, RateLimitError, TokenBucketLimiter


class TestTokenBucketLimiter:
    """Test request and token buckets."""

    def setup_method(self):
        self.clock = FakeClock(now=0)
        self.limiter = TokenBucketLimiter(LimiterConfig(rpm=2, tpm=100, window_ms=60000), clock=self.clock)

    def test_allows_until_empty(self):
        """Requests are allowed while the bucket holds enough."""
        assert self.limiter.try_consume().allowed
        assert self.limiter.try_consume().allowed

        refused = self.limiter.try_consume()
        assert not refused.allowed
        assert refused.retry_after_ms == 30000

    def test_refills_linearly(self):
        """Half a window refills half the bucket."""
        self.limiter.try_consume()
        self.limiter.try_consume()
        self.clock.advance(30000)
        assert self.limiter.try_consume().allowed
        assert not self.limiter.try_consume().allowed

    def test_token_bucket_refusal_consumes_nothing(self):
        """Both buckets must fit; a refusal leaves both untouched."""
        assert self.limiter.try_consume(requests=1, tokens=80).allowed

        refused = self.limiter.try_consume(requests=1, tokens=50)
        assert not refused.allowed
        assert not refused.exceeds_capacity
        assert refused.retry_after_ms == 18000

        availability = self.limiter.get_availability()
        assert availability.rpm_remaining == 1
        assert availability.tpm_remaining == 20

    def test_request_larger_than_bucket(self):
        """A request bigger than a full bucket is flagged instead of given a wait."""
        refused = self.limiter.try_consume(requests=1, tokens=150)
        assert not refused.allowed
        assert refused.exceeds_capacity
        assert refused.retry_after_ms == 0

        assert not self.limiter.try_consume(requests=3).allowed
        assert self.limiter.try_consume(requests=3).exceeds_capacity

        with pytest.raises(RateLimitError, match="exceeds limiter capacity"):
            self.limiter.consume_or_raise(tokens=150)

        assert self.limiter.get_availability().tpm_remaining == 100

    def test_consume_or_raise(self):
        """consume_or_raise raises with the wait."""
        self.limiter.consume_or_raise(requests=2)
        with pytest.raises(RateLimitError) as exc_info:
            self.limiter.consume_or_raise()
        assert exc_info.value.retry_after_ms == 30000

    def test_availability_fractions(self):
        """Fractions are relative to capacity."""
        self.limiter.try_consume(requests=1, tokens=25)
        availability = self.limiter.get_availability()
        assert availability.rpm_fraction == 0.5
        assert availability.tpm_fraction == 0.75

    def test_update_limits_caps_levels(self):
        """Shrinking a bucket caps its level."""
        self.limiter.update_limits(rpm=1)
        availability = self.limiter.get_availability()
        assert availability.rpm_remaining == 1
        assert availability.rpm_fraction == 1.0

    def test_reset(self):
        """reset refills both buckets."""
        self.limiter.try_consume(requests=2, tokens=100)
        self.limiter.reset()
        assert self.limiter.try_consume(requests=2, tokens=100).allowed
