"""
Benchmark runner for modelgate.

Measures per-spec latency with a tiny fixed prompt, a bounded number of
samples and bounded retries. Results go to the benchmark store and, as
``bench`` samples, to the performance store. Runs can be awaited directly
or scheduled in the background.
"""

import asyncio
import logging
import statistics
import time
from typing import Callable, Optional, Protocol

from modelgate.benchmark_store import BenchmarkConfig, ModelBenchmarkStore
from modelgate.budget_store import RateLimitBudgetStore
from modelgate.diagnostics import EventLog
from modelgate.duration import now_ms
from modelgate.performance_store import ModelPerformanceStore
from modelgate.rate_limiter import TokenBucketLimiter
from modelgate.registry import map_service_tier, parse_model_spec
from modelgate.retry_policy import RequestFailedError, RetryConfig, RetryLoop
from modelgate.schemas import BenchmarkRecord, ErrorKind, SampleKind
from modelgate.transport import Transport, TransportError, TransportRequest


logger = logging.getLogger("modelgate.bench")


class BenchmarkScheduler(Protocol):
    """Anything that can start a background benchmark pass."""

    def schedule(self, specs: list[str], reason: str = "auto") -> Optional[asyncio.Task]:
        ...


class NullBenchmarkScheduler:
    """Scheduler used when no transport is available: never probes."""

    def schedule(self, specs: list[str], reason: str = "auto") -> Optional[asyncio.Task]:
        return None


def unique_specs(specs) -> list[str]:
    seen = set()
    out = []
    for spec in specs or []:
        if spec and spec not in seen:
            seen.add(spec)
            out.append(spec)
    return out


class Benchmarker:
    """
    Bounded latency benchmarks.

    At most ``config.max_models`` specs are measured per pass, each with
    ``config.samples`` calls. Only one background pass runs at a time.
    """

    def __init__(
        self,
        transport: Transport,
        bench_store: ModelBenchmarkStore,
        perf_store: Optional[ModelPerformanceStore] = None,
        budget_store: Optional[RateLimitBudgetStore] = None,
        limiter: Optional[TokenBucketLimiter] = None,
        config: Optional[BenchmarkConfig] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], int]] = None,
        timer: Callable[[], float] = time.perf_counter,
        sleep=None,
        provider: str = "openai",
    ):
        self.transport = transport
        self.bench_store = bench_store
        self.perf_store = perf_store
        self.budget_store = budget_store
        self.limiter = limiter
        self.config = config or BenchmarkConfig()
        self.events = events
        self.provider = provider
        self._clock = clock or now_ms
        self._timer = timer
        self._retry = RetryLoop(
            RetryConfig(max_attempts=2, max_total_ms=self.config.timeout_ms * 2 + 2000, base_ms=200, max_ms=1200),
            clock=self._clock,
            sleep=sleep,
        )
        self._active: Optional[asyncio.Task] = None

    def _log(self, level: str, message: str, **meta) -> None:
        if self.events is not None:
            self.events.emit(level, "bench", message, **meta)

    def estimate_tokens(self) -> int:
        return -(-len(self.config.prompt) // 4) + 4

    # =========================================================================
    # MEASUREMENT
    # =========================================================================

    async def measure_once(self, spec: str) -> float:
        """Send one probe and return its latency in ms."""
        model_id, tier = parse_model_spec(spec)
        if self.limiter is not None:
            slot = self.limiter.try_consume(requests=1, tokens=self.estimate_tokens())
            if not slot.allowed:
                raise TransportError(
                    "Local limiter refused benchmark probe",
                    code="BACKPRESSURE",
                    retry_after_ms=slot.retry_after_ms,
                )

        request = TransportRequest(
            model_id=model_id,
            service_tier=map_service_tier(tier),
            model_spec=spec,
            input=self.config.prompt,
            max_output_tokens=self.config.max_output_tokens,
            purpose="bench",
            timeout_ms=self.config.timeout_ms,
        )
        started = self._timer()
        response = await asyncio.wait_for(
            self.transport.send(request),
            timeout=self.config.timeout_ms / 1000,
        )
        elapsed = (self._timer() - started) * 1000
        if response.status >= 400:
            raise TransportError.from_response(response)

        if self.budget_store is not None and response.headers:
            await self.budget_store.update_from_headers(self.provider, model_id, response.headers)
        return float(response.latency_ms) if response.latency_ms is not None else elapsed

    async def collect_samples(self, spec: str) -> list[float]:
        samples = []
        for _ in range(max(1, self.config.samples)):
            samples.append(await self._retry.run(lambda attempt: self.measure_once(spec)))
        return samples

    # =========================================================================
    # RUNS
    # =========================================================================

    async def run(self, specs, force: bool = False, reason: str = "auto") -> dict[str, BenchmarkRecord]:
        """
        Benchmark every eligible spec and return the new entries.

        Without ``force``, specs with a fresh entry or a recent attempt are
        skipped.
        """
        now = self._clock()
        eligible = []
        for spec in unique_specs(specs):
            model_id, _ = parse_model_spec(spec)
            if not model_id:
                continue
            entry = await self.bench_store.get_entry(spec)
            if not force and (self.bench_store.is_fresh(entry, now) or not self.bench_store.can_attempt(entry, now)):
                continue
            eligible.append(spec)
        eligible = eligible[: self.config.max_models]

        status = {
            "status": "running" if eligible else "idle",
            "reason": reason,
            "total": len(eligible),
            "completed": 0,
            "started_at": now,
            "current_model_spec": None,
        }
        await self.bench_store.set_status(status)
        self._log("info", "Bench started", reason=reason, total=len(eligible))

        results: dict[str, BenchmarkRecord] = {}
        for index, spec in enumerate(eligible):
            await self.bench_store.set_status({**status, "completed": index, "current_model_spec": spec})
            await self.bench_store.upsert(spec, {"last_attempt_at": self._clock()})
            try:
                samples = await self.collect_samples(spec)
            except RequestFailedError as exc:
                await self._record_failure(spec, exc.error.to_dict(), exc.error.kind, exc.error.retry_after_ms)
                continue

            median_ms = round(statistics.median(samples))
            patch = {
                "median_ms": median_ms,
                "samples": len(samples),
                "updated_at": self._clock(),
                "last_error": None,
            }
            await self.bench_store.upsert(spec, patch)
            if self.perf_store is not None:
                await self.perf_store.record_sample(spec, latency_ms=median_ms, kind=SampleKind.BENCH.value)
            results[spec] = BenchmarkRecord.from_dict({**patch, "last_attempt_at": self._clock()})
            self._log("info", "Bench completed", model_spec=spec, latency_ms=median_ms)

        await self.bench_store.set_status({
            **status,
            "status": "done" if eligible else "idle",
            "completed": len(eligible),
            "finished_at": self._clock(),
            "current_model_spec": None,
        })
        self._log("info", "Bench finished", reason=reason, completed=len(results))
        return results

    async def _record_failure(self, spec: str, error: dict, kind: ErrorKind, retry_after_ms) -> None:
        await self.bench_store.upsert(spec, {"last_error": error})
        self._log("error", "Bench failed", model_spec=spec, kind=kind.value)
        if kind == ErrorKind.RATE_LIMITED and self.budget_store is not None:
            model_id, _ = parse_model_spec(spec)
            await self.budget_store.on_too_many_requests(self.provider, model_id, retry_after_ms=retry_after_ms)

    def schedule(self, specs, reason: str = "auto") -> Optional[asyncio.Task]:
        """
        Start a background pass unless one is already running.

        Must be called from a running event loop. Returns the task, or None
        if nothing was started.
        """
        if self._active is not None and not self._active.done():
            return None
        pending = unique_specs(specs)[: self.config.max_models]
        if not pending:
            return None
        loop = asyncio.get_running_loop()
        self._active = loop.create_task(self._run_in_background(pending, reason))
        return self._active

    async def _run_in_background(self, specs: list[str], reason: str) -> None:
        try:
            await self.run(specs, reason=reason)
        except Exception as exc:  # background probe must not surface
            logger.exception(f"Background benchmark failed: {exc}")
            self._log("error", "Background bench crashed", error=str(exc))

    async def drain(self) -> None:
        """Wait for the background pass, if any."""
        if self._active is not None:
            await self._active
