"""Tests for EWMA performance tracking."""

import math

import pytest

from helpers import FakeClock
from modelgate.performance_store import ModelPerformanceStore, PerformanceConfig, ewma
from modelgate.schemas import PersistStatus, SampleKind
from modelgate.storage import InMemoryKeyValueStore


SPEC = "gpt-5-mini:flex"


class TestEwma:
    """Test the EWMA step."""

    def test_seed_and_step(self):
        """The first sample seeds; later ones blend."""
        assert ewma(None, 10, 0.5) == 10
        assert ewma(10, 20, 0.5) == 15

    def test_invalid_samples_are_discarded(self):
        """Non-positive, non-finite and non-numeric samples leave the average alone."""
        assert ewma(10, 0, 0.5) == 10
        assert ewma(10, -5, 0.5) == 10
        assert ewma(10, math.nan, 0.5) == 10
        assert ewma(10, math.inf, 0.5) == 10
        assert ewma(10, "fast", 0.5) == 10
        assert ewma(None, None, 0.5) is None

    def test_stays_between_previous_and_sample(self):
        """The new average lies between the old one and the sample."""
        for prev, sample in [(100, 300), (300, 100), (50, 50)]:
            value = ewma(prev, sample, 0.18)
            assert min(prev, sample) <= value <= max(prev, sample)


class TestModelPerformanceStore:
    """Test the durable performance store."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = ModelPerformanceStore(InMemoryKeyValueStore(), PerformanceConfig(), clock=self.clock)

    @pytest.mark.asyncio
    async def test_bench_samples_blend_with_bench_alpha(self):
        """Bench samples use the bench alpha and are never throttled."""
        await self.store.record_sample(SPEC, latency_ms=100, kind=SampleKind.BENCH)
        await self.store.record_sample(SPEC, latency_ms=200, kind=SampleKind.BENCH)

        entry = await self.store.get(SPEC)
        assert entry.ewma_latency_ms == pytest.approx(135.0)
        assert entry.samples == 2
        assert entry.last_kind == "bench"

    @pytest.mark.asyncio
    async def test_real_samples_are_throttled(self):
        """A real sample within the minimum interval is skipped."""
        first = await self.store.record_sample(SPEC, tps=50, latency_ms=800)
        self.clock.advance(1000)
        second = await self.store.record_sample(SPEC, tps=500, latency_ms=80)
        self.clock.advance(15000)
        third = await self.store.record_sample(SPEC, tps=100, latency_ms=400)

        assert first.persisted
        assert second.status == PersistStatus.SKIPPED
        assert third.persisted
        entry = await self.store.get(SPEC)
        assert entry.samples == 2
        assert entry.ewma_tps == pytest.approx(50 * 0.82 + 100 * 0.18)

    @pytest.mark.asyncio
    async def test_invalid_sample_keeps_average(self):
        """A zero throughput sample does not move the average."""
        await self.store.record_sample(SPEC, tps=40, latency_ms=500, kind=SampleKind.BENCH)
        await self.store.record_sample(SPEC, tps=0, latency_ms=None, kind=SampleKind.BENCH)
        entry = await self.store.get(SPEC)
        assert entry.ewma_tps == 40
        assert entry.ewma_latency_ms == 500

    @pytest.mark.asyncio
    async def test_stale_entries_are_hidden_not_deleted(self):
        """Past the TTL get returns None but the entry is kept."""
        await self.store.record_sample(SPEC, tps=40, latency_ms=500)
        self.clock.advance(12 * 60 * 60 * 1000 + 1)
        assert await self.store.get(SPEC) is None
        assert SPEC in await self.store.get_all()

    @pytest.mark.asyncio
    async def test_empty_spec_is_skipped(self):
        """No spec, no write."""
        result = await self.store.record_sample("", tps=1)
        assert result.status == PersistStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_needs_bench(self):
        """Probes are wanted without throughput and limited to one per interval."""
        now = self.clock.now
        assert self.store.needs_bench(SPEC, now, None)

        await self.store.mark_bench_at(SPEC)
        entry = (await self.store.get_all())[SPEC]
        assert entry.last_bench_at == now
        assert entry.updated_at is None
        assert not self.store.needs_bench(SPEC, now, entry)

        later = now + 60 * 60 * 1000 + 1
        assert self.store.needs_bench(SPEC, later, entry)

    @pytest.mark.asyncio
    async def test_no_bench_needed_with_fresh_throughput(self):
        """A fresh entry with throughput needs no probe."""
        await self.store.record_sample(SPEC, tps=40, latency_ms=500)
        entry = await self.store.get(SPEC)
        assert not self.store.needs_bench(SPEC, self.clock.now, entry)
        assert self.store.bench_allowed(entry, self.clock.now)

    @pytest.mark.asyncio
    async def test_bench_allowed_once_per_interval(self):
        assert self.store.bench_allowed(None, self.clock.now)
        await self.store.mark_bench_at(SPEC)
        entry = await self.store.get(SPEC)
        assert not self.store.bench_allowed(entry, self.clock.now + 1000)
        assert self.store.bench_allowed(entry, self.clock.now + 60 * 60 * 1000 + 1)

    @pytest.mark.asyncio
    async def test_mark_bench_does_not_throttle_real_samples(self):
        """Marking a probe leaves the write throttle alone."""
        await self.store.mark_bench_at(SPEC)
        result = await self.store.record_sample(SPEC, tps=40, latency_ms=500)
        assert result.persisted
        assert (await self.store.get(SPEC)).last_bench_at == self.clock.now
