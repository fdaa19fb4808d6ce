"""
Model performance tracking for modelgate.

Keeps rolling (EWMA) throughput and latency per model spec so speed-based
decisions survive restarts. Real traffic is the main signal; benchmark
probes fill in when no throughput is known.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from modelgate.diagnostics import EventLog
from modelgate.duration import is_finite_number
from modelgate.schemas import PerformanceRecord, PersistResult, SampleKind
from modelgate.storage import KeyValueStore, StoreBase


logger = logging.getLogger("modelgate.performance")

STORAGE_KEY = "modelPerformance"


@dataclass
class PerformanceConfig:
    """Performance store configuration."""
    ttl_ms: int = 12 * 60 * 60 * 1000
    min_update_interval_ms: int = 15 * 1000
    bench_min_interval_ms: int = 60 * 60 * 1000
    alpha_bench: float = 0.35
    alpha_real: float = 0.18


def ewma(prev: Optional[float], observed, alpha: float) -> Optional[float]:
    """
    Exponentially weighted moving average step.

    Invalid observations (non-numeric, non-finite or <= 0) leave ``prev``
    unchanged. A missing ``prev`` is seeded with the observation.
    """
    if not is_finite_number(observed) or observed <= 0:
        return prev
    if not is_finite_number(prev) or prev <= 0:
        return float(observed)
    return prev * (1 - alpha) + observed * alpha


class ModelPerformanceStore(StoreBase):
    """Durable EWMA statistics keyed by model spec."""

    area = "performance"

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        config: Optional[PerformanceConfig] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(store, events=events, clock=clock)
        self.config = config or PerformanceConfig()

    async def get_all(self) -> dict[str, PerformanceRecord]:
        raw = await self._read(STORAGE_KEY, {})
        return {spec: PerformanceRecord.from_dict(entry) for spec, entry in raw.items()}

    def is_stale(self, entry: PerformanceRecord, now: int) -> bool:
        return entry.updated_at is not None and now - entry.updated_at > self.config.ttl_ms

    async def get(self, spec: str, now: Optional[int] = None) -> Optional[PerformanceRecord]:
        """Entry for ``spec``, or None if missing or older than the TTL. Stale entries are kept."""
        if not spec:
            return None
        ts = self._now(now)
        entry = (await self.get_all()).get(spec)
        if entry is None or self.is_stale(entry, ts):
            return None
        return entry

    async def record_sample(
        self,
        spec: str,
        tps: Optional[float] = None,
        latency_ms: Optional[float] = None,
        kind: str = SampleKind.REAL.value,
        output_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
        now: Optional[int] = None,
    ) -> PersistResult:
        """
        Fold one observation into the spec's averages.

        Real samples arriving within ``min_update_interval_ms`` of the last
        write are skipped.
        """
        if not spec:
            return PersistResult.skipped("missing model spec")
        ts = self._now(now)
        sample_kind = SampleKind.BENCH if str(getattr(kind, "value", kind)) == SampleKind.BENCH.value else SampleKind.REAL

        async with self._lock:
            raw = await self._read(STORAGE_KEY, {})
            prev = PerformanceRecord.from_dict(raw[spec]) if spec in raw else None

            if (
                sample_kind == SampleKind.REAL
                and prev is not None
                and prev.last_write_at is not None
                and ts - prev.last_write_at < self.config.min_update_interval_ms
            ):
                return PersistResult.skipped("throttled")

            alpha = self.config.alpha_bench if sample_kind == SampleKind.BENCH else self.config.alpha_real
            record = PerformanceRecord(
                ewma_tps=ewma(prev.ewma_tps if prev else None, tps, alpha),
                ewma_latency_ms=ewma(prev.ewma_latency_ms if prev else None, latency_ms, alpha),
                samples=(prev.samples if prev else 0) + 1,
                last_kind=sample_kind.value,
                last_output_tokens=output_tokens if is_finite_number(output_tokens) else (prev.last_output_tokens if prev else None),
                last_total_tokens=total_tokens if is_finite_number(total_tokens) else (prev.last_total_tokens if prev else None),
                updated_at=ts,
                last_write_at=ts,
                last_bench_at=prev.last_bench_at if prev else None,
            )
            raw[spec] = record.to_dict()
            return await self._write({STORAGE_KEY: raw})

    async def mark_bench_at(self, spec: str, now: Optional[int] = None) -> PersistResult:
        """Record that a calibration probe was issued for ``spec``."""
        if not spec:
            return PersistResult.skipped("missing model spec")
        ts = self._now(now)
        async with self._lock:
            raw = await self._read(STORAGE_KEY, {})
            entry = dict(raw.get(spec) or {})
            entry["last_bench_at"] = ts
            raw[spec] = PerformanceRecord.from_dict(entry).to_dict()
            return await self._write({STORAGE_KEY: raw})

    def needs_bench(self, spec: str, now: int, entry: Optional[PerformanceRecord]) -> bool:
        """
        True when a probe for ``spec`` is both useful and allowed.

        Useful: no entry, a stale one, or no usable throughput.
        Allowed: no probe within ``bench_min_interval_ms``.
        """
        if not spec:
            return False
        if entry is None:
            return True
        useful = self.is_stale(entry, now) or not entry.has_tps
        return useful and self.bench_allowed(entry, now)

    def bench_allowed(self, entry: Optional[PerformanceRecord], now: int) -> bool:
        """True when no benchmark was started within ``bench_min_interval_ms``."""
        if entry is None or entry.last_bench_at is None:
            return True
        return now - entry.last_bench_at > self.config.bench_min_interval_ms
