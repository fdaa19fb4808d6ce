"""
Retry policy for modelgate.

Bounded exponential backoff with jitter, retry budgets, and classification
of failures into a closed taxonomy. ``RetryLoop`` runs an async task under
these rules with cooperative cancellation.
"""

import asyncio
import logging
import random
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from modelgate.duration import is_finite_number, now_ms
from modelgate.schemas import ClassifiedError, ErrorKind


logger = logging.getLogger("modelgate.retry")

T = TypeVar("T")

DEFAULT_BASE_MS = 500
DEFAULT_MAX_MS = 60 * 1000
DEFAULT_JITTER = 0.2
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_TOTAL_MS = 10 * 60 * 1000
MIN_BACKOFF_MS = 100
MIN_BACKPRESSURE_MS = 250


@dataclass
class RetryConfig:
    """Retry budget configuration."""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    max_total_ms: int = DEFAULT_MAX_TOTAL_MS
    base_ms: int = DEFAULT_BASE_MS
    max_ms: int = DEFAULT_MAX_MS
    jitter_ratio: float = DEFAULT_JITTER


class RequestFailedError(Exception):
    """Raised when a request fails terminally."""

    def __init__(self, error: ClassifiedError, attempts: int = 1):
        self.error = error
        self.kind = error.kind
        self.attempts = attempts
        super().__init__(f"{error.kind.value}: {error.message}")


class RequestCancelledError(RequestFailedError):
    """Raised when a request is cancelled by its caller."""

    def __init__(self, message: str = "Request cancelled", attempts: int = 0):
        super().__init__(
            ClassifiedError(kind=ErrorKind.ABORTED, is_retryable=False, message=message),
            attempts=attempts,
        )


def _positive(value, fallback):
    if not is_finite_number(value) or value <= 0:
        return fallback
    return value


def compute_backoff_ms(
    attempt: int = 1,
    base_ms: float = DEFAULT_BASE_MS,
    max_ms: float = DEFAULT_MAX_MS,
    jitter_ratio: float = DEFAULT_JITTER,
    random_fn: Callable[[], float] = random.random,
) -> int:
    """
    Backoff delay before the next attempt.

    Args:
        attempt: 1-based attempt number that just failed
        base_ms: Delay after the first failure
        max_ms: Cap applied before jitter
        jitter_ratio: Spread around the delay, clamped to [0, 0.95]
        random_fn: Source of uniform [0, 1) values

    Returns:
        Delay in milliseconds, never below 100.
    """
    safe_attempt = max(1, int(attempt)) if is_finite_number(attempt) else 1
    safe_base = _positive(base_ms, DEFAULT_BASE_MS)
    safe_max = _positive(max_ms, DEFAULT_MAX_MS)
    expo = min(safe_base * (2 ** (safe_attempt - 1)), safe_max)

    jitter = jitter_ratio if is_finite_number(jitter_ratio) else 0
    jitter = max(0.0, min(float(jitter), 0.95))
    factor = 1.0
    if jitter > 0:
        sample = random_fn() if callable(random_fn) else random.random()
        if not is_finite_number(sample):
            sample = 0.5
        factor = (1 - jitter) + 2 * jitter * max(0.0, min(1.0, sample))

    return max(MIN_BACKOFF_MS, round(expo * factor))


def should_retry(
    attempt: int = 0,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    first_attempt_ts: Optional[int] = None,
    max_total_ms: int = DEFAULT_MAX_TOTAL_MS,
    now: Optional[int] = None,
) -> bool:
    """True while both the attempt budget and the wall-clock budget remain."""
    safe_attempt = max(0, int(attempt)) if is_finite_number(attempt) else 0
    safe_max = max(1, int(max_attempts)) if is_finite_number(max_attempts) and max_attempts > 0 else DEFAULT_MAX_ATTEMPTS
    if safe_attempt >= safe_max:
        return False

    if is_finite_number(first_attempt_ts):
        current = now if now is not None else now_ms()
        elapsed = max(0, current - first_attempt_ts)
        if elapsed > _positive(max_total_ms, DEFAULT_MAX_TOTAL_MS):
            return False
    return True


# =============================================================================
# CLASSIFICATION
# =============================================================================

_TAB_GONE_CODES = {"TAB_GONE", "TAB_UNAVAILABLE", "TAB_CLOSED"}
_ABORT_CODES = {"ABORTED", "ABORT_ERR", "CANCELLED"}
_DISCONNECT_CODES = {
    "TRANSPORT_DISCONNECTED",
    "OFFSCREEN_PORT_DISCONNECTED",
    "OFFSCREEN_UNAVAILABLE",
    "OFFSCREEN_REQUEST_TIMEOUT",
}
_BACKPRESSURE_CODES = {"BACKPRESSURE", "OFFSCREEN_BACKPRESSURE"}
_NO_PROGRESS_CODES = {"NO_PROGRESS", "NO_PROGRESS_WATCHDOG", "CS_NO_ACK", "APPLY_ACK_TIMEOUT"}
_NETWORK_CODES = {"NETWORK_ERROR", "FETCH_FAILED"}
_RATE_LIMIT_CODES = {"RATE_LIMITED", "OPENAI_429", "RATE_LIMIT_BUDGET_WAIT"}
_NETWORK_HINTS = ("network", "fetch", "timeout", "temporarily unavailable")


def _field(src: Any, *names: str) -> Any:
    for name in names:
        if isinstance(src, Mapping):
            value = src.get(name)
        else:
            value = getattr(src, name, None)
        if value is not None and value != "":
            return value
    return None


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not is_finite_number(number):
        return None
    return int(round(number))


def classify_error(err: Any) -> ClassifiedError:
    """
    Map an exception, mapping or string to a ClassifiedError.

    Recognized fields: ``code``/``error_code``, ``status``/``http_status``,
    ``retry_after_ms``/``wait_ms`` and ``message``.
    """
    if isinstance(err, asyncio.CancelledError):
        return ClassifiedError(ErrorKind.ABORTED, False, message=str(err) or "cancelled")

    if isinstance(err, str):
        src: Any = {"message": err}
    elif err is None:
        src = {}
    else:
        src = err

    raw_code = _field(src, "code", "error_code")
    code = str(raw_code).upper() if raw_code is not None else None
    raw_message = _field(src, "message", "error")
    if raw_message is None and isinstance(err, BaseException):
        raw_message = str(err)
    message = str(raw_message or "")
    lower = message.lower()
    http_status = _as_int(_field(src, "http_status", "status"))
    retry_after = _as_int(_field(src, "retry_after_ms", "retry_after"))
    if retry_after is not None:
        retry_after = max(0, retry_after)

    def result(kind: ErrorKind, retryable: bool, network: bool = False, wait: Optional[int] = None):
        return ClassifiedError(
            kind=kind,
            is_retryable=retryable,
            message=message,
            http_status=http_status,
            network=network,
            retry_after_ms=wait,
        )

    if code in _TAB_GONE_CODES:
        return result(ErrorKind.TAB_GONE, False)
    if code in _ABORT_CODES:
        return result(ErrorKind.ABORTED, False)
    if http_status == 429:
        return result(ErrorKind.RATE_LIMITED, True, wait=retry_after)
    if http_status is not None and 500 <= http_status < 600:
        return result(ErrorKind.SERVER_ERROR, True)
    if code in _DISCONNECT_CODES:
        return result(ErrorKind.TRANSPORT_DISCONNECTED, True)
    if code in _BACKPRESSURE_CODES:
        wait = _as_int(_field(src, "wait_ms", "retry_after_ms", "retry_after"))
        return result(
            ErrorKind.BACKPRESSURE,
            True,
            wait=max(MIN_BACKPRESSURE_MS, wait) if wait is not None else None,
        )
    if code == "LEASE_EXPIRED":
        return result(ErrorKind.LEASE_EXPIRED, True)
    if code in _NO_PROGRESS_CODES:
        return result(ErrorKind.NO_PROGRESS, True)
    if code in _NETWORK_CODES:
        return result(ErrorKind.NETWORK_ERROR, True, network=True)
    if code is None and isinstance(err, (TimeoutError, ConnectionError)):
        return result(ErrorKind.NETWORK_ERROR, True, network=True)
    if any(hint in lower for hint in _NETWORK_HINTS):
        return result(ErrorKind.NETWORK_ERROR, True, network=True)
    if code in _RATE_LIMIT_CODES:
        return result(ErrorKind.RATE_LIMITED, True, wait=retry_after)
    if code == "SERVER_ERROR" or code == "OPENAI_5XX":
        return result(ErrorKind.SERVER_ERROR, True)
    return result(ErrorKind.UNKNOWN, False)


# =============================================================================
# RETRY LOOP
# =============================================================================

class RetryLoop:
    """
    Run an async task with bounded retries.

    The task receives the 1-based attempt number. Failures are classified;
    non-retryable ones and exhausted budgets raise ``RequestFailedError``.
    Cancellation is checked before every attempt and while backing off.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        clock: Optional[Callable[[], int]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        random_fn: Callable[[], float] = random.random,
    ):
        self.config = config or RetryConfig()
        self._clock = clock or now_ms
        self._sleep = sleep
        self._random = random_fn

    def delay_for(self, attempt: int, classified: ClassifiedError) -> int:
        """Backoff for ``attempt``, never shorter than a server-requested wait."""
        backoff = compute_backoff_ms(
            attempt,
            base_ms=self.config.base_ms,
            max_ms=self.config.max_ms,
            jitter_ratio=self.config.jitter_ratio,
            random_fn=self._random,
        )
        return max(classified.retry_after_ms or 0, backoff)

    async def pause(
        self,
        delay_ms: int,
        cancel_event: Optional[asyncio.Event] = None,
        heartbeat: Optional[Callable[[], Awaitable[Any]]] = None,
        heartbeat_ms: Optional[int] = None,
    ) -> None:
        """
        Sleep for ``delay_ms``, returning early with an error if cancelled.

        With ``heartbeat``, the wait is split into slices of at most
        ``heartbeat_ms`` and ``heartbeat`` is awaited before each slice.
        """
        remaining = max(0, int(delay_ms))
        if heartbeat is None:
            await self._sleep_once(remaining, cancel_event)
            return

        step = heartbeat_ms if heartbeat_ms and heartbeat_ms > 0 else max(1, remaining)
        while True:
            await heartbeat()
            chunk = min(remaining, step)
            await self._sleep_once(chunk, cancel_event)
            remaining -= chunk
            if remaining <= 0:
                return

    async def _sleep_once(self, delay_ms: int, cancel_event: Optional[asyncio.Event]) -> None:
        seconds = max(0, delay_ms) / 1000
        if self._sleep is not None:
            await self._sleep(seconds)
        elif cancel_event is not None:
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        else:
            await asyncio.sleep(seconds)

        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelledError("Cancelled while waiting to retry")

    async def run(
        self,
        task: Callable[[int], Awaitable[T]],
        cancel_event: Optional[asyncio.Event] = None,
        on_failure: Optional[Callable[[ClassifiedError, int, Exception], Awaitable[Any]]] = None,
        heartbeat: Optional[Callable[[], Awaitable[Any]]] = None,
        heartbeat_ms: Optional[int] = None,
    ) -> T:
        """
        Run ``task`` until it succeeds or the retry budget is spent.

        Args:
            task: Coroutine function taking the attempt number
            cancel_event: Set by the caller to stop further attempts
            on_failure: Awaited with (classified, attempt, exception) before deciding
            heartbeat: Awaited at least every ``heartbeat_ms`` while backing off

        Returns:
            The task's result.

        Raises:
            RequestFailedError: On a terminal failure
            RequestCancelledError: When cancellation is observed
        """
        first_attempt_ts = self._clock()
        attempt = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise RequestCancelledError(attempts=attempt)
            attempt += 1
            try:
                return await task(attempt)
            except RequestFailedError:
                raise
            except Exception as exc:
                error = exc
                classified = classify_error(exc)

            if on_failure is not None:
                await on_failure(classified, attempt, error)

            retry = classified.is_retryable and should_retry(
                attempt,
                max_attempts=self.config.max_attempts,
                first_attempt_ts=first_attempt_ts,
                max_total_ms=self.config.max_total_ms,
                now=self._clock(),
            )
            if not retry:
                raise RequestFailedError(classified, attempts=attempt)

            delay = self.delay_for(attempt, classified)
            logger.info(f"Attempt {attempt} failed with {classified.kind.value}; retrying in {delay}ms")
            await self.pause(delay, cancel_event, heartbeat=heartbeat, heartbeat_ms=heartbeat_ms)
