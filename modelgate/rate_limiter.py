"""
Rate limiting for modelgate.

Process-local token buckets for requests per minute and tokens per minute.
State is not durable; after a restart both buckets start full.
"""

import math
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

from modelgate.duration import now_ms
from modelgate.schemas import Availability


@dataclass
class LimiterConfig:
    """Token bucket configuration."""
    rpm: float = 60
    tpm: float = 60000
    window_ms: int = 60000


@dataclass
class ConsumeResult:
    """
    Outcome of a consume attempt.

    ``exceeds_capacity`` marks a refusal that no amount of waiting fixes:
    the request is larger than a full bucket. ``retry_after_ms`` is 0 then.
    """
    allowed: bool
    retry_after_ms: int = 0
    exceeds_capacity: bool = False


class RateLimitError(Exception):
    """Raised when the local limiter refuses a request."""

    def __init__(self, message: str, retry_after_ms: int = 0):
        self.retry_after_ms = retry_after_ms
        super().__init__(message)


class TokenBucketLimiter:
    """
    Two linearly refilling buckets: one for requests, one for tokens.

    A request is allowed only when both buckets hold enough. A refusal
    consumes nothing and reports how long until both would.
    """

    def __init__(
        self,
        config: Optional[LimiterConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize the limiter.

        Args:
            config: Bucket sizes and window. Uses defaults if not provided.
            clock: Millisecond clock, defaults to wall time
        """
        self.config = config or LimiterConfig()
        self._clock = clock or now_ms
        self._lock = Lock()

        self.rpm_capacity = float(self.config.rpm)
        self.tpm_capacity = float(self.config.tpm)
        self.window_ms = max(1, int(self.config.window_ms))
        self._rpm_tokens = self.rpm_capacity
        self._tpm_tokens = self.tpm_capacity
        self._last_refill_at = self._clock()

    def _refill(self, now: int) -> None:
        elapsed = max(0, now - self._last_refill_at)
        if not elapsed:
            return
        ratio = elapsed / self.window_ms
        self._rpm_tokens = min(self.rpm_capacity, self._rpm_tokens + ratio * self.rpm_capacity)
        self._tpm_tokens = min(self.tpm_capacity, self._tpm_tokens + ratio * self.tpm_capacity)
        self._last_refill_at = now

    def _estimate_wait(self, deficit: float, capacity: float) -> int:
        if deficit <= 0 or capacity <= 0:
            return 0
        return math.ceil(deficit / capacity * self.window_ms)

    def try_consume(self, requests: float = 1, tokens: float = 0, now: Optional[int] = None) -> ConsumeResult:
        """
        Take ``requests`` and ``tokens`` from the buckets if both suffice.

        Args:
            requests: Request units to consume
            tokens: Token units to consume
            now: Current time in ms (defaults to the clock)

        Returns:
            ConsumeResult with the wait until the request would fit, or
            ``exceeds_capacity`` set when it never will.
        """
        with self._lock:
            current = int(now) if now is not None else self._clock()
            self._refill(current)

            if requests > self.rpm_capacity or tokens > self.tpm_capacity:
                return ConsumeResult(allowed=False, retry_after_ms=0, exceeds_capacity=True)

            if self._rpm_tokens >= requests and self._tpm_tokens >= tokens:
                self._rpm_tokens -= requests
                self._tpm_tokens -= tokens
                return ConsumeResult(allowed=True, retry_after_ms=0)

            rpm_wait = self._estimate_wait(requests - self._rpm_tokens, self.rpm_capacity)
            tpm_wait = self._estimate_wait(tokens - self._tpm_tokens, self.tpm_capacity)
            return ConsumeResult(allowed=False, retry_after_ms=max(rpm_wait, tpm_wait))

    def consume_or_raise(self, requests: float = 1, tokens: float = 0, now: Optional[int] = None) -> None:
        """
        Like ``try_consume`` but raises on refusal.

        Raises:
            RateLimitError: If either bucket is short
        """
        result = self.try_consume(requests=requests, tokens=tokens, now=now)
        if result.exceeds_capacity:
            raise RateLimitError(
                f"Request of {requests} requests / {tokens} tokens exceeds limiter capacity "
                f"({self.rpm_capacity:g} rpm / {self.tpm_capacity:g} tpm)"
            )
        if not result.allowed:
            raise RateLimitError(
                f"Rate limit exceeded: need {requests} requests / {tokens} tokens, "
                f"retry in {result.retry_after_ms}ms",
                retry_after_ms=result.retry_after_ms,
            )

    def update_limits(self, rpm: Optional[float] = None, tpm: Optional[float] = None) -> None:
        """Change bucket sizes; current levels are capped to the new size."""
        with self._lock:
            if rpm is not None:
                self.rpm_capacity = float(rpm)
                self._rpm_tokens = min(self._rpm_tokens, self.rpm_capacity)
            if tpm is not None:
                self.tpm_capacity = float(tpm)
                self._tpm_tokens = min(self._tpm_tokens, self.tpm_capacity)

    def get_availability(self, now: Optional[int] = None) -> Availability:
        with self._lock:
            current = int(now) if now is not None else self._clock()
            self._refill(current)
            return Availability(
                rpm_remaining=self._rpm_tokens,
                tpm_remaining=self._tpm_tokens,
                rpm_fraction=self._rpm_tokens / self.rpm_capacity if self.rpm_capacity else 0,
                tpm_fraction=self._tpm_tokens / self.tpm_capacity if self.tpm_capacity else 0,
            )

    def reset(self) -> None:
        """Refill both buckets."""
        with self._lock:
            self._rpm_tokens = self.rpm_capacity
            self._tpm_tokens = self.tpm_capacity
            self._last_refill_at = self._clock()
