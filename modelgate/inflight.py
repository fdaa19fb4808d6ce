"""
In-flight request ledger for modelgate.

Every request attempt is written to durable storage, with a lease, before
any network I/O, and removed once it reaches a terminal state. After a
crash the sweeper finds records whose lease has expired and, for each,
adopts a result that already completed, requeues the job, or fails it.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from modelgate.budget_store import RateLimitBudgetStore
from modelgate.diagnostics import EventLog
from modelgate.duration import now_ms
from modelgate.registry import parse_model_spec
from modelgate.schemas import ClassifiedError, ErrorKind, InflightRecord, InflightStatus, PersistResult
from modelgate.storage import KeyValueStore, StoreBase


logger = logging.getLogger("modelgate.inflight")

STORAGE_KEY = "inflightRequests"
RESULTS_KEY = "completedResults"


@dataclass
class LeaseConfig:
    """Lease and sweep configuration."""
    lease_ms: int = 2 * 60 * 1000
    sweep_interval_ms: int = 30 * 1000
    max_attempts: int = 3


def deterministic_request_id(tenant_key, job_id, block_id=None, attempt: int = 1) -> str:
    """
    Stable id for one attempt of one unit of work.

    The same inputs always give the same id, so a result cached under it can
    be found again after a restart.
    """
    parts = [str(tenant_key or "-"), str(job_id or "-"), str(block_id or "-"), str(max(1, int(attempt)))]
    return "req:" + ":".join(parts)


class InflightLedger(StoreBase):
    """Durable lease-backed records of in-flight request attempts."""

    area = "inflight"

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        config: Optional[LeaseConfig] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(store, events=events, clock=clock)
        self.config = config or LeaseConfig()

    def next_lease(self, now: Optional[int] = None) -> int:
        return self._now(now) + self.config.lease_ms

    async def get_all(self) -> dict[str, InflightRecord]:
        raw = await self._read(STORAGE_KEY, {})
        return {request_id: InflightRecord.from_dict(row) for request_id, row in raw.items()}

    async def get(self, request_id: str) -> Optional[InflightRecord]:
        if not request_id:
            return None
        return (await self.get_all()).get(request_id)

    async def _upsert(self, request_id: str, patch: dict[str, Any]) -> PersistResult:
        async with self._lock:
            raw = await self._read(STORAGE_KEY, {})
            merged = {**(raw.get(request_id) or {}), **patch, "request_id": request_id}
            raw[request_id] = InflightRecord.from_dict(merged).to_dict()
            return await self._write({STORAGE_KEY: raw})

    async def begin(
        self,
        request_id: str,
        tenant_key: Optional[str] = None,
        job_id: Optional[str] = None,
        model_spec: Optional[str] = None,
        context: Optional[dict] = None,
        attempt: int = 1,
        now: Optional[int] = None,
    ) -> PersistResult:
        """Record a new running attempt. Call before any network I/O."""
        if not request_id:
            raise ValueError("request_id is required")
        ts = self._now(now)
        return await self._upsert(request_id, {
            "status": InflightStatus.RUNNING.value,
            "lease_until_ts": ts + self.config.lease_ms,
            "attempt": attempt,
            "created_at": ts,
            "updated_at": ts,
            "tenant_key": tenant_key,
            "job_id": job_id,
            "model_spec": model_spec,
            "error": None,
            "context": dict(context or {}),
        })

    async def refresh_lease(
        self,
        request_id: str,
        attempt: Optional[int] = None,
        model_spec: Optional[str] = None,
        now: Optional[int] = None,
    ) -> PersistResult:
        """Extend the lease at the start of each retry attempt."""
        ts = self._now(now)
        patch: dict[str, Any] = {"lease_until_ts": ts + self.config.lease_ms, "updated_at": ts}
        if attempt is not None:
            patch["attempt"] = attempt
        if model_spec is not None:
            patch["model_spec"] = model_spec
        return await self._upsert(request_id, patch)

    async def remove(self, request_id: str) -> PersistResult:
        async with self._lock:
            raw = await self._read(STORAGE_KEY, {})
            if raw.pop(request_id, None) is None:
                return PersistResult.skipped("unknown request")
            return await self._write({STORAGE_KEY: raw})

    async def complete(self, request_id: str) -> PersistResult:
        """Terminal success: the record is dropped."""
        return await self.remove(request_id)

    async def fail(
        self,
        request_id: str,
        error: Union[ClassifiedError, dict, None] = None,
        status: InflightStatus = InflightStatus.FAILED,
        now: Optional[int] = None,
    ) -> PersistResult:
        """Terminal failure: write the status and error, then drop the record."""
        ts = self._now(now)
        error_dict = error.to_dict() if isinstance(error, ClassifiedError) else dict(error or {})
        written = await self._upsert(request_id, {
            "status": InflightStatus(status).value,
            "error": error_dict,
            "updated_at": ts,
        })
        self._emit(
            "warn" if status == InflightStatus.CANCELLED else "error",
            "inflight.terminal",
            f"{request_id} {InflightStatus(status).value}",
            request_id=request_id,
            error=error_dict,
        )
        removed = await self.remove(request_id)
        return written if not written.persisted else removed

    async def list_expired(self, now: Optional[int] = None) -> list[InflightRecord]:
        """Records whose lease ended at or before ``now``, ordered by request id."""
        ts = self._now(now)
        all_records = await self.get_all()
        return [
            all_records[request_id]
            for request_id in sorted(all_records)
            if all_records[request_id].is_expired(ts)
        ]

    async def claim(self, request_id: str, now: Optional[int] = None) -> Optional[InflightRecord]:
        """
        Take over an expired record by extending its lease.

        Returns None if the record is gone or its lease is live, which means
        another sweeper (or the original worker) owns it.
        """
        ts = self._now(now)
        async with self._lock:
            raw = await self._read(STORAGE_KEY, {})
            if request_id not in raw:
                return None
            record = InflightRecord.from_dict(raw[request_id])
            if not record.is_expired(ts):
                return None
            record.lease_until_ts = ts + self.config.lease_ms
            record.updated_at = ts
            raw[request_id] = record.to_dict()
            result = await self._write({STORAGE_KEY: raw})
        if not result.persisted:
            logger.warning(f"Claim of {request_id} not persisted: {result.warning}")
        return record


# =============================================================================
# SWEEPER
# =============================================================================

@dataclass
class AdoptedResult:
    """A result that finished before its worker could record it."""
    ok: bool = True
    status: int = 200
    headers: dict = field(default_factory=dict)
    body: Any = None

    @classmethod
    def from_dict(cls, data: dict) -> "AdoptedResult":
        return cls(
            ok=bool(data.get("ok", True)),
            status=int(data.get("status") or 200),
            headers=dict(data.get("headers") or {}),
            body=data.get("body"),
        )


class ResultAdopter(Protocol):
    """Looks up completed results by request id."""

    async def get_completed_result(self, request_id: str) -> Optional[AdoptedResult]:
        ...


class NullResultAdopter:
    """Adopter with nothing to adopt."""

    async def get_completed_result(self, request_id: str) -> Optional[AdoptedResult]:
        return None


class InMemoryResultCache:
    """Process-local result cache keyed by request id."""

    def __init__(self):
        self._results: dict[str, AdoptedResult] = {}

    async def put(self, request_id: str, result: AdoptedResult) -> PersistResult:
        self._results[request_id] = result
        return PersistResult.ok()

    async def get_completed_result(self, request_id: str) -> Optional[AdoptedResult]:
        return self._results.get(request_id)

    async def pop(self, request_id: str) -> Optional[AdoptedResult]:
        return self._results.pop(request_id, None)


class StoredResultCache(StoreBase):
    """
    Result cache kept in the key-value store.

    A response is written here as soon as it arrives and dropped once the
    request completes, so a process that crashes in between leaves the
    result behind for the next process's sweeper to adopt.
    """

    area = "results"

    async def put(self, request_id: str, result: AdoptedResult) -> PersistResult:
        async with self._lock:
            raw = await self._read(RESULTS_KEY, {})
            raw[request_id] = {**asdict(result), "stored_at": self._now()}
            return await self._write({RESULTS_KEY: raw})

    async def get_completed_result(self, request_id: str) -> Optional[AdoptedResult]:
        row = (await self._read(RESULTS_KEY, {})).get(request_id)
        if not isinstance(row, dict):
            return None
        return AdoptedResult.from_dict(row)

    async def pop(self, request_id: str) -> Optional[AdoptedResult]:
        async with self._lock:
            raw = await self._read(RESULTS_KEY, {})
            row = raw.pop(request_id, None)
            if not isinstance(row, dict):
                return None
            await self._write({RESULTS_KEY: raw})
        return AdoptedResult.from_dict(row)


@dataclass
class SweepReport:
    """What one sweep did, by request id."""
    adopted: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.adopted) + len(self.requeued) + len(self.failed)

    def to_dict(self) -> dict:
        return {
            "adopted": list(self.adopted),
            "requeued": list(self.requeued),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
        }


class InflightSweeper:
    """
    Recovers expired in-flight records.

    Each expired record is claimed first so two sweepers never handle the
    same one. A completed result is adopted (delivered once through
    ``on_adopt``); otherwise the job is requeued while attempts remain, or
    failed with ``LEASE_EXPIRED``. The record is removed in every case.
    """

    def __init__(
        self,
        ledger: InflightLedger,
        adopter: Optional[ResultAdopter] = None,
        budget_store: Optional[RateLimitBudgetStore] = None,
        requeue: Optional[Callable[[InflightRecord], Awaitable[bool]]] = None,
        on_adopt: Optional[Callable[[InflightRecord, AdoptedResult], Awaitable[Any]]] = None,
        events: Optional[EventLog] = None,
        provider: str = "openai",
        clock: Optional[Callable[[], int]] = None,
    ):
        self.ledger = ledger
        self._clock = clock or now_ms
        self.adopter = adopter or NullResultAdopter()
        self.budget_store = budget_store
        self.requeue = requeue
        self.on_adopt = on_adopt
        self.events = events
        self.provider = provider

    def _log(self, level: str, tag: str, message: str, **meta) -> None:
        if self.events is not None:
            self.events.emit(level, tag, message, **meta)

    async def _adopt(self, record: InflightRecord, result: AdoptedResult, now: int) -> None:
        if result.ok and result.headers and self.budget_store is not None and record.model_spec:
            model_id, _ = parse_model_spec(record.model_spec)
            await self.budget_store.update_from_headers(self.provider, model_id, result.headers, now=now)
        if self.on_adopt is not None:
            await self.on_adopt(record, result)
        self._log(
            "info",
            "inflight.adopted",
            "Adopted completed result" if result.ok else "Adopted completed error",
            request_id=record.request_id,
            model_spec=record.model_spec,
            status=result.status,
        )

    async def _handle(self, record: InflightRecord, now: int, report: SweepReport) -> None:
        result = await self.adopter.get_completed_result(record.request_id)
        if result is not None:
            await self._adopt(record, result, now)
            report.adopted.append(record.request_id)
            discard = getattr(self.adopter, "pop", None)
            if discard is not None:
                await discard(record.request_id)
            return

        if self.requeue is not None and record.job_id and record.attempt < self.ledger.config.max_attempts:
            if await self.requeue(record):
                report.requeued.append(record.request_id)
                self._log("warn", "inflight.requeued", "Expired request requeued", request_id=record.request_id, job_id=record.job_id)
                return

        error = ClassifiedError(
            kind=ErrorKind.LEASE_EXPIRED,
            is_retryable=False,
            message="Lease expired without a result",
        )
        await self.ledger.fail(record.request_id, error, now=now)
        report.failed.append(record.request_id)

    async def sweep(self, now: Optional[int] = None) -> SweepReport:
        ts = int(now) if now is not None else self._clock()
        report = SweepReport()
        for row in await self.ledger.list_expired(ts):
            record = await self.ledger.claim(row.request_id, now=ts)
            if record is None:
                report.skipped.append(row.request_id)
                continue
            try:
                await self._handle(record, ts, report)
            except Exception as exc:  # one bad record must not stop the sweep
                logger.warning(f"Sweep of {record.request_id} failed: {exc}")
                self._log("warn", "inflight.sweep_failed", str(exc), request_id=record.request_id)
            finally:
                await self.ledger.remove(record.request_id)

        if report.total or report.skipped:
            logger.info(f"Sweep: {report.to_dict()}")
        return report

    async def run_periodic(self, stop_event: asyncio.Event) -> None:
        """Sweep every ``sweep_interval_ms`` until ``stop_event`` is set."""
        interval = self.ledger.config.sweep_interval_ms / 1000
        while not stop_event.is_set():
            try:
                await self.sweep()
            except Exception as exc:
                logger.warning(f"Inflight sweep failed: {exc}")
                self._log("warn", "inflight.sweep_failed", str(exc))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
