"""
Benchmark results for modelgate.

Persists per-spec latency benchmarks (``modelBenchmarks``) and the status
of the latest benchmark run (``modelBenchmarkStatus``).
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

from modelgate.diagnostics import EventLog
from modelgate.schemas import BenchmarkRecord, PersistResult
from modelgate.storage import KeyValueStore, StoreBase


STORAGE_KEY_BENCHMARKS = "modelBenchmarks"
STORAGE_KEY_STATUS = "modelBenchmarkStatus"


@dataclass
class BenchmarkConfig:
    """Benchmark store and runner configuration."""
    ttl_ms: int = 24 * 60 * 60 * 1000
    min_interval_ms: int = 45 * 60 * 1000
    samples: int = 3
    max_models: int = 5
    timeout_ms: int = 20000
    prompt: str = "Respond with a single '.'"
    max_output_tokens: int = 16


class ModelBenchmarkStore(StoreBase):
    """Durable benchmark entries keyed by model spec."""

    area = "benchmark"

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        config: Optional[BenchmarkConfig] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(store, events=events, clock=clock)
        self.config = config or BenchmarkConfig()

    def is_fresh(self, entry: Optional[BenchmarkRecord], now: int) -> bool:
        if entry is None or entry.updated_at is None:
            return False
        return now - entry.updated_at <= self.config.ttl_ms

    def can_attempt(self, entry: Optional[BenchmarkRecord], now: int) -> bool:
        if entry is None or entry.last_attempt_at is None:
            return True
        return now - entry.last_attempt_at >= self.config.min_interval_ms

    async def get_all_entries(self) -> dict[str, BenchmarkRecord]:
        raw = await self._read(STORAGE_KEY_BENCHMARKS, {})
        return {spec: BenchmarkRecord.from_dict(entry) for spec, entry in raw.items()}

    async def get_all(self, now: Optional[int] = None) -> dict[str, BenchmarkRecord]:
        """Fresh entries only."""
        ts = self._now(now)
        return {
            spec: entry
            for spec, entry in (await self.get_all_entries()).items()
            if self.is_fresh(entry, ts)
        }

    async def get_entry(self, spec: str) -> Optional[BenchmarkRecord]:
        if not spec:
            return None
        return (await self.get_all_entries()).get(spec)

    async def get(self, spec: str, now: Optional[int] = None) -> Optional[BenchmarkRecord]:
        entry = await self.get_entry(spec)
        return entry if self.is_fresh(entry, self._now(now)) else None

    async def upsert(self, spec: str, patch: dict[str, Any]) -> PersistResult:
        """Merge ``patch`` into the spec's entry."""
        if not spec:
            return PersistResult.skipped("missing model spec")
        async with self._lock:
            raw = await self._read(STORAGE_KEY_BENCHMARKS, {})
            merged = {**(raw.get(spec) or {}), **patch}
            raw[spec] = BenchmarkRecord.from_dict(merged).to_dict()
            return await self._write({STORAGE_KEY_BENCHMARKS: raw})

    async def set_status(self, status: Optional[dict]) -> PersistResult:
        return await self._write({STORAGE_KEY_STATUS: status})

    async def get_status(self) -> Optional[dict]:
        status = await self._read(STORAGE_KEY_STATUS, None)
        return status if isinstance(status, dict) else None

    async def get_snapshot(self) -> dict:
        return {
            STORAGE_KEY_STATUS: await self.get_status(),
            STORAGE_KEY_BENCHMARKS: {
                spec: entry.to_dict() for spec, entry in (await self.get_all_entries()).items()
            },
        }
