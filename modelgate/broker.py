"""
Broker: the modelgate request path.

Wires every component once and runs requests through choose, gate,
record, send, classify and learn.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from modelgate.benchmark_store import ModelBenchmarkStore
from modelgate.benchmarker import Benchmarker
from modelgate.budget_store import RateLimitBudgetStore
from modelgate.capability import CapabilityOracle, HeuristicCapabilityRank
from modelgate.chooser import ModelChooser
from modelgate.config import BrokerConfig
from modelgate.diagnostics import EventLog
from modelgate.duration import now_ms
from modelgate.inflight import (
    AdoptedResult,
    InflightLedger,
    InflightSweeper,
    InMemoryResultCache,
    StoredResultCache,
    SweepReport,
    deterministic_request_id,
)
from modelgate.job_queue import JobQueue
from modelgate.performance_store import ModelPerformanceStore
from modelgate.rate_limiter import TokenBucketLimiter
from modelgate.registry import ModelRegistry, build_registry
from modelgate.retry_policy import (
    RequestCancelledError,
    RequestFailedError,
    RetryLoop,
    compute_backoff_ms,
)
from modelgate.schemas import (
    ChooserResult,
    ClassifiedError,
    ErrorKind,
    InflightRecord,
    InflightStatus,
    QueueEntry,
    SampleKind,
)
from modelgate.storage import InMemoryKeyValueStore, KeyValueStore, SQLiteKeyValueStore
from modelgate.tenant_state import TenantStatusStore
from modelgate.transport import MockTransport, Transport, TransportError, TransportRequest, TransportResponse


logger = logging.getLogger("modelgate.broker")


class NoModelsError(Exception):
    """Raised when none of the candidates is a known model spec."""

    def __init__(self, candidates):
        self.candidates = list(candidates or [])
        super().__init__(f"No valid model among candidates: {self.candidates}")


@dataclass
class BrokerResponse:
    """
    Result of one brokered request.

    Contains the transport response plus the choice that produced it.
    """
    request_id: str
    response: TransportResponse
    choice: ChooserResult
    attempts: int
    latency_ms: Optional[int] = None

    @property
    def model_spec(self) -> Optional[str]:
        """Which model spec handled this request."""
        return self.choice.chosen_model_spec

    @property
    def body(self) -> Any:
        return self.response.body

    @property
    def why(self) -> str:
        """Reason code behind the model choice."""
        return self.choice.decision.reason.value


@dataclass
class Services:
    """Every component, constructed once and shared."""
    config: BrokerConfig
    store: KeyValueStore
    events: EventLog
    registry: ModelRegistry
    limiter: TokenBucketLimiter
    budget: RateLimitBudgetStore
    perf: ModelPerformanceStore
    bench: ModelBenchmarkStore
    tenants: TenantStatusStore
    transport: Transport
    benchmarker: Benchmarker
    chooser: ModelChooser
    ledger: InflightLedger
    queue: JobQueue
    result_cache: Union[StoredResultCache, InMemoryResultCache]
    sweeper: InflightSweeper
    clock: Callable[[], int]
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None


def build_services(
    config: Optional[BrokerConfig] = None,
    store: Optional[KeyValueStore] = None,
    transport: Optional[Transport] = None,
    oracle: Optional[CapabilityOracle] = None,
    events: Optional[EventLog] = None,
    clock: Optional[Callable[[], int]] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    result_cache: Optional[Union[StoredResultCache, InMemoryResultCache]] = None,
) -> Services:
    """
    Construct and wire every component.

    Args:
        config: Broker settings. Uses defaults if not provided.
        store: Durable key-value store. SQLite when ``config.db_path`` is set,
            in-memory otherwise.
        transport: Remote API transport. A MockTransport (dry run) if not provided.
        oracle: Capability oracle for registry ranks.
        events: Diagnostic event sink.
        clock: Millisecond clock shared by every component.
        sleep: Async sleep used for retry and gate waits (tests inject one).
        result_cache: Where responses wait until their request completes, and
            where the sweeper adopts them from. Kept in ``store`` if not provided,
            so a restarted process can adopt results from the one that crashed.

    Returns:
        Services container.
    """
    config = config or BrokerConfig()
    clock = clock or now_ms
    if store is None:
        store = SQLiteKeyValueStore(config.db_path) if config.db_path else InMemoryKeyValueStore()
    if events is None:
        events = EventLog(
            limit=config.event_limit,
            events_file=Path(config.events_file) if config.events_file else None,
            clock=clock,
        )
    transport = transport or MockTransport()

    registry = build_registry(oracle or HeuristicCapabilityRank())
    limiter = TokenBucketLimiter(config.limiter, clock=clock)
    budget = RateLimitBudgetStore(store, config.budget, events=events, clock=clock)
    perf = ModelPerformanceStore(store, config.performance, events=events, clock=clock)
    bench = ModelBenchmarkStore(store, config.benchmark, events=events, clock=clock)
    tenants = TenantStatusStore(store, events=events, clock=clock)
    benchmarker = Benchmarker(
        transport,
        bench,
        perf_store=perf,
        budget_store=budget,
        limiter=limiter,
        config=config.benchmark,
        events=events,
        clock=clock,
        sleep=sleep,
        provider=config.provider,
    )
    chooser = ModelChooser(
        registry,
        perf,
        bench,
        tenant_store=tenants,
        scheduler=benchmarker,
        events=events,
        clock=clock,
    )
    ledger = InflightLedger(store, config.lease, events=events, clock=clock)
    queue = JobQueue(store, config.queue, events=events, clock=clock)
    if result_cache is None:
        result_cache = StoredResultCache(store, events=events, clock=clock)

    async def requeue(record: InflightRecord) -> bool:
        return await queue.requeue(record.job_id)

    sweeper = InflightSweeper(
        ledger,
        adopter=result_cache,
        budget_store=budget,
        requeue=requeue,
        events=events,
        provider=config.provider,
        clock=clock,
    )

    return Services(
        config=config,
        store=store,
        events=events,
        registry=registry,
        limiter=limiter,
        budget=budget,
        perf=perf,
        bench=bench,
        tenants=tenants,
        transport=transport,
        benchmarker=benchmarker,
        chooser=chooser,
        ledger=ledger,
        queue=queue,
        result_cache=result_cache,
        sweeper=sweeper,
        clock=clock,
        sleep=sleep,
    )


class Broker:
    """
    Request broker.

    Chooses a model, waits on the provider cooldown and the local limiter,
    records the attempt in the in-flight ledger before sending, retries
    transient failures, and feeds headers and latency back into the stores.

    Example:
        ```python
        from modelgate import Broker

        broker = Broker.with_openai()
        result = await broker.execute(
            "Summarize this paragraph ...",
            policy="cheapest",
            tenant_key="tab-1",
            job_id="job-42",
        )

        print(result.model_spec)
        print(f"Why: {result.why}")
        ```
    """

    def __init__(self, services: Optional[Services] = None):
        self.services = services or build_services()
        self.config = self.services.config
        self._retry = RetryLoop(
            self.config.retry,
            clock=self.services.clock,
            sleep=self.services.sleep,
        )

    @property
    def provider(self) -> str:
        return self.config.provider

    # =========================================================================
    # REQUEST PATH
    # =========================================================================

    async def choose(
        self,
        candidates=None,
        policy=None,
        tenant_key: Optional[str] = None,
        task_type: Optional[str] = None,
        now: Optional[int] = None,
    ) -> ChooserResult:
        return await self.services.chooser.choose(
            candidates if candidates is not None else self.config.candidates,
            policy if policy is not None else self.config.policy,
            tenant_key=tenant_key,
            task_type=task_type,
            now=now,
        )

    @property
    def heartbeat_ms(self) -> int:
        """Longest wait between lease refreshes of a live request."""
        return max(1, self.config.lease.lease_ms // 2)

    async def _wait_for_capacity(
        self,
        est_tokens: int,
        cancel_event: Optional[asyncio.Event],
        heartbeat: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        """
        Block until the provider is out of cooldown and the limiter has room.

        ``heartbeat`` is awaited at least every ``heartbeat_ms`` while blocked.

        Raises:
            RequestFailedError: If the request can never fit the limiter
        """
        while True:
            cooldown = await self.services.budget.cooldown_remaining_ms(self.provider)
            if cooldown > 0:
                logger.info(f"Provider {self.provider} cooling down for {cooldown}ms")
                await self._retry.pause(cooldown, cancel_event, heartbeat=heartbeat, heartbeat_ms=self.heartbeat_ms)
                continue
            slot = self.services.limiter.try_consume(requests=1, tokens=max(0, est_tokens))
            if slot.allowed:
                return
            if slot.exceeds_capacity:
                raise RequestFailedError(ClassifiedError(
                    kind=ErrorKind.BACKPRESSURE,
                    is_retryable=False,
                    message=f"Request of {est_tokens} tokens exceeds the local limiter capacity",
                ))
            await self._retry.pause(
                max(1, slot.retry_after_ms),
                cancel_event,
                heartbeat=heartbeat,
                heartbeat_ms=self.heartbeat_ms,
            )

    async def execute(
        self,
        input: Any,
        candidates=None,
        policy=None,
        tenant_key: Optional[str] = None,
        job_id: Optional[str] = None,
        block_id: Optional[str] = None,
        task_type: Optional[str] = None,
        est_tokens: int = 0,
        max_output_tokens: Optional[int] = None,
        request_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BrokerResponse:
        """
        Run one request end to end.

        Args:
            input: Payload for the remote API
            candidates: Model specs to choose from (config default if None)
            policy: fastest, cheapest or smartest (config default if None)
            tenant_key: Tenant the request belongs to
            job_id: Job the request belongs to; with tenant_key it makes the
                request id deterministic
            block_id: Optional sub-unit of the job
            task_type: Label stored with the tenant's model decision
            est_tokens: Token estimate charged to the local limiter
            max_output_tokens: Passed through to the transport
            request_id: Explicit request id
            cancel_event: Set by the caller to stop further attempts

        Returns:
            BrokerResponse.

        Raises:
            NoModelsError: If no candidate is a known model spec
            RequestFailedError: On a terminal failure
            RequestCancelledError: When cancellation is observed
        """
        choice = await self.choose(candidates, policy, tenant_key=tenant_key, task_type=task_type)
        if not choice.chosen_model_spec:
            raise NoModelsError(candidates if candidates is not None else self.config.candidates)

        spec = choice.chosen_model_spec
        model_id = choice.chosen_model_id
        if not request_id:
            if job_id:
                request_id = deterministic_request_id(tenant_key, job_id, block_id)
            else:
                request_id = f"req:{uuid.uuid4().hex[:12]}"

        ledger = self.services.ledger
        await ledger.begin(
            request_id,
            tenant_key=tenant_key,
            job_id=job_id,
            model_spec=spec,
            context={"task_type": task_type, "block_id": block_id},
        )

        clock = self.services.clock
        timings: dict[str, int] = {}

        async def keep_lease() -> None:
            await ledger.refresh_lease(request_id)

        async def attempt_once(attempt: int) -> TransportResponse:
            await self._wait_for_capacity(est_tokens, cancel_event, heartbeat=keep_lease)
            await ledger.refresh_lease(request_id, attempt=attempt, model_spec=spec)

            request = TransportRequest(
                model_id=model_id,
                service_tier=choice.service_tier or "default",
                model_spec=spec,
                input=input,
                max_output_tokens=max_output_tokens,
                request_id=request_id,
                timeout_ms=self.config.lease.lease_ms,
            )
            started = clock()
            response = await asyncio.wait_for(
                self.services.transport.send(request),
                timeout=self.config.lease.lease_ms / 1000,
            )
            timings["latency_ms"] = response.latency_ms if response.latency_ms is not None else clock() - started
            timings["attempts"] = attempt
            if response.status >= 400:
                raise TransportError.from_response(response)

            await self.services.result_cache.put(request_id, AdoptedResult(
                ok=True,
                status=response.status,
                headers=dict(response.headers),
                body=response.body,
            ))
            return response

        async def on_failure(classified: ClassifiedError, attempt: int, exc: Exception) -> None:
            self.services.events.warn(
                "broker.attempt_failed",
                f"{spec} attempt {attempt}: {classified.kind.value}",
                request_id=request_id,
                error=classified.to_dict(),
            )
            if classified.kind == ErrorKind.RATE_LIMITED:
                await self.services.budget.on_too_many_requests(
                    self.provider,
                    model_id,
                    retry_after_ms=classified.retry_after_ms,
                    headers=getattr(exc, "headers", None),
                )

        try:
            response = await self._retry.run(
                attempt_once,
                cancel_event=cancel_event,
                on_failure=on_failure,
                heartbeat=keep_lease,
                heartbeat_ms=self.heartbeat_ms,
            )
        except RequestCancelledError as e:
            await ledger.fail(request_id, e.error, status=InflightStatus.CANCELLED)
            raise
        except RequestFailedError as e:
            await ledger.fail(request_id, e.error, status=InflightStatus.FAILED)
            raise

        await self._learn(spec, model_id, response, timings.get("latency_ms"))
        await ledger.complete(request_id)
        await self.services.result_cache.pop(request_id)

        return BrokerResponse(
            request_id=request_id,
            response=response,
            choice=choice,
            attempts=timings.get("attempts", 1),
            latency_ms=timings.get("latency_ms"),
        )

    async def _learn(self, spec: str, model_id: str, response: TransportResponse, latency_ms: Optional[int]) -> None:
        """Fold a successful response into the budget and performance stores."""
        if response.headers:
            await self.services.budget.update_from_headers(self.provider, model_id, response.headers)
        tps = None
        output_tokens = response.output_tokens
        if output_tokens and latency_ms and latency_ms > 0:
            tps = output_tokens / (latency_ms / 1000)
        await self.services.perf.record_sample(
            spec,
            tps=tps,
            latency_ms=latency_ms,
            kind=SampleKind.REAL,
            output_tokens=output_tokens,
            total_tokens=response.total_tokens,
        )

    # =========================================================================
    # JOBS AND RECOVERY
    # =========================================================================

    async def process_next(
        self,
        handler: Callable[[QueueEntry], Awaitable[Any]],
        active_tenant_key: Optional[str] = None,
    ) -> Optional[tuple[QueueEntry, Any]]:
        """
        Dequeue one job and run ``handler`` on it.

        A retryable failure parks the job with a backoff while dequeues
        remain under ``retry.max_attempts``; anything else finishes the job.

        Returns:
            (entry, handler result or the RequestFailedError), or None when
            nothing is ready.
        """
        queue = self.services.queue
        entry = await queue.dequeue_next(active_tenant_key=active_tenant_key)
        if entry is None:
            return None

        try:
            result = await handler(entry)
        except RequestFailedError as e:
            if e.error.is_retryable and entry.dequeued_count < self.config.retry.max_attempts:
                delay = max(
                    e.error.retry_after_ms or 0,
                    compute_backoff_ms(
                        entry.dequeued_count,
                        base_ms=self.config.retry.base_ms,
                        max_ms=self.config.retry.max_ms,
                        jitter_ratio=self.config.retry.jitter_ratio,
                    ),
                )
                await queue.mark_waiting(entry.job_id, self.services.clock() + delay, reason=e.kind.value)
            else:
                await queue.mark_done(entry.job_id)
            return entry, e

        await queue.mark_done(entry.job_id)
        return entry, result

    async def sweep(self, now: Optional[int] = None) -> SweepReport:
        """Recover expired in-flight records and lapsed queue leases."""
        report = await self.services.sweeper.sweep(now=now)
        await self.services.queue.requeue_expired(now=now)
        return report

    async def close(self) -> None:
        await self.services.benchmarker.drain()
        close = getattr(self.services.store, "close", None)
        if callable(close):
            close()

    # =========================================================================
    # CONSTRUCTORS
    # =========================================================================

    @classmethod
    def from_config(cls, config: Optional[BrokerConfig] = None, **kwargs) -> "Broker":
        """
        Create a Broker from configuration.

        Args:
            config: Broker settings. Read from the environment if not provided.
            **kwargs: Additional arguments passed to ``build_services``.

        Returns:
            Configured Broker instance.
        """
        return cls(build_services(config or BrokerConfig.from_env(), **kwargs))

    @classmethod
    def with_openai(cls, api_key: Optional[str] = None, **kwargs) -> "Broker":
        """
        Create a Broker that talks to OpenAI.

        Args:
            api_key: OpenAI API key. Uses OPENAI_API_KEY env var if not provided.
            **kwargs: Additional arguments passed to ``from_config``.

        Returns:
            Broker with an OpenAITransport.
        """
        from modelgate.transport import OpenAITransport
        return cls.from_config(transport=OpenAITransport(api_key=api_key), **kwargs)
