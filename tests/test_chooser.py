"""Tests for model choice."""

import pytest

from helpers import FakeClock
from modelgate.benchmark_store import ModelBenchmarkStore
from modelgate.capability import HeuristicCapabilityRank
from modelgate.chooser import ModelChooser, normalize_policy
from modelgate.diagnostics import EventLog
from modelgate.performance_store import ModelPerformanceStore
from modelgate.registry import build_registry
from modelgate.schemas import DecisionReason, SelectionPolicy
from modelgate.storage import InMemoryKeyValueStore
from modelgate.tenant_state import TenantStatusStore


class RecordingScheduler:
    def __init__(self):
        self.calls = []

    def schedule(self, specs, reason="auto"):
        self.calls.append((list(specs), reason))
        return None


class TestModelChooser:
    """Test policy handling and tie-breaks."""

    def setup_method(self):
        self.clock = FakeClock()
        kv = InMemoryKeyValueStore()
        self.events = EventLog(enable_logging=False, clock=self.clock)
        self.perf = ModelPerformanceStore(kv, clock=self.clock)
        self.bench = ModelBenchmarkStore(kv, clock=self.clock)
        self.tenants = TenantStatusStore(kv, clock=self.clock)
        self.scheduler = RecordingScheduler()
        self.chooser = ModelChooser(
            build_registry(HeuristicCapabilityRank()),
            self.perf,
            self.bench,
            tenant_store=self.tenants,
            scheduler=self.scheduler,
            events=self.events,
            clock=self.clock,
        )

    async def _bench(self, spec, median_ms):
        await self.bench.upsert(spec, {"median_ms": median_ms, "samples": 3, "updated_at": self.clock.now})

    @pytest.mark.asyncio
    async def test_cheapest(self):
        """Cheapest picks the lowest input+output price."""
        result = await self.chooser.choose(
            ["gpt-5:standard", "gpt-5-mini:flex", "gpt-4.1-mini:standard"],
            "cheapest",
        )
        assert result.chosen_model_spec == "gpt-5-mini:flex"
        assert result.chosen_model_id == "gpt-5-mini"
        assert result.service_tier == "flex"
        assert result.decision.reason == DecisionReason.MIN_COST

    @pytest.mark.asyncio
    async def test_cheapest_tie_breaks_on_spec(self):
        """Equal prices resolve to the lexicographically smaller spec, whatever the input order."""
        first = await self.chooser.choose(["gpt-5:flex", "gpt-5.1:flex"], "cheapest")
        second = await self.chooser.choose(["gpt-5.1:flex", "gpt-5:flex"], "cheapest")
        assert first.chosen_model_spec == "gpt-5.1:flex"
        assert second.chosen_model_spec == "gpt-5.1:flex"

    @pytest.mark.asyncio
    async def test_smartest(self):
        """Smartest picks the highest rank, cheapest among equals."""
        result = await self.chooser.choose(
            ["gpt-5-mini:flex", "gpt-5:standard", "gpt-4.1:standard"],
            "smartest",
        )
        assert result.chosen_model_spec == "gpt-5:standard"
        assert result.decision.reason == DecisionReason.MAX_RANK

        result = await self.chooser.choose(["gpt-5:standard", "gpt-5:flex"], "smartest")
        assert result.chosen_model_spec == "gpt-5:flex"

    @pytest.mark.asyncio
    async def test_fastest_cold_start_uses_cheapest_and_probes(self):
        """Without latency data fastest answers at once and schedules a probe."""
        candidates = ["gpt-5:standard", "gpt-5-mini:flex"]
        result = await self.chooser.choose(candidates, "fastest")

        assert result.chosen_model_spec == "gpt-5-mini:flex"
        assert result.decision.reason == DecisionReason.NO_BENCH
        assert self.scheduler.calls == [(candidates, "fastest")]
        for spec in candidates:
            assert (await self.perf.get_all())[spec].last_bench_at == self.clock.now

    @pytest.mark.asyncio
    async def test_fastest_does_not_reprobe_within_interval(self):
        """A second cold decision right away does not schedule again."""
        candidates = ["gpt-5:standard", "gpt-5-mini:flex"]
        await self.chooser.choose(candidates, "fastest")
        self.clock.advance(1000)
        result = await self.chooser.choose(candidates, "fastest")

        assert result.decision.reason == DecisionReason.NO_BENCH
        assert len(self.scheduler.calls) == 1

    @pytest.mark.asyncio
    async def test_fastest_with_bench_medians(self):
        """With fresh medians fastest picks the lowest latency."""
        await self._bench("gpt-5:standard", 900)
        await self._bench("gpt-5-mini:flex", 1500)
        await self._bench("gpt-4.1-mini:standard", 400)

        result = await self.chooser.choose(
            ["gpt-5:standard", "gpt-5-mini:flex", "gpt-4.1-mini:standard"],
            "fastest",
        )
        assert result.chosen_model_spec == "gpt-4.1-mini:standard"
        assert result.decision.reason == DecisionReason.MIN_LATENCY
        assert all(item.latency_source == "bench" for item in result.decision.considered)
        assert self.scheduler.calls == []

    @pytest.mark.asyncio
    async def test_fastest_latency_tie_prefers_rank(self):
        """Equal latency falls through to the smartest ordering."""
        await self._bench("gpt-5:standard", 500)
        await self._bench("gpt-5-mini:standard", 500)

        result = await self.chooser.choose(["gpt-5-mini:standard", "gpt-5:standard"], "fastest")
        assert result.chosen_model_spec == "gpt-5:standard"

    @pytest.mark.asyncio
    async def test_fastest_traffic_latency_is_not_a_benchmark(self):
        """Traffic averages are reported but do not replace a missing benchmark."""
        candidates = ["gpt-5:standard", "gpt-5-mini:flex"]
        await self.perf.record_sample("gpt-5:standard", tps=50, latency_ms=300)
        await self.perf.record_sample("gpt-5-mini:flex", tps=50, latency_ms=1200)

        result = await self.chooser.choose(candidates, "fastest")
        assert result.chosen_model_spec == "gpt-5-mini:flex"
        assert result.decision.reason == DecisionReason.NO_BENCH
        assert {item.latency_source for item in result.decision.considered} == {"traffic"}
        assert self.scheduler.calls == [(candidates, "fastest")]

    @pytest.mark.asyncio
    async def test_fastest_mixed_bench_and_traffic(self):
        """One candidate with only traffic data keeps the decision at NO_BENCH."""
        await self._bench("gpt-5:standard", 800)
        await self.perf.record_sample("gpt-5-mini:flex", tps=50, latency_ms=200)

        result = await self.chooser.choose(["gpt-5:standard", "gpt-5-mini:flex"], "fastest")
        assert result.chosen_model_spec == "gpt-5-mini:flex"
        assert result.decision.reason == DecisionReason.NO_BENCH
        assert self.scheduler.calls == [(["gpt-5-mini:flex"], "fastest")]

    @pytest.mark.asyncio
    async def test_bench_beats_traffic(self):
        """A fresh benchmark median is preferred over the traffic average."""
        await self.perf.record_sample("gpt-5:standard", tps=50, latency_ms=300)
        await self._bench("gpt-5:standard", 800)

        result = await self.chooser.choose(["gpt-5:standard"], "fastest")
        item = result.decision.considered[0]
        assert item.median_ms == 800
        assert item.latency_source == "bench"

    @pytest.mark.asyncio
    async def test_no_models(self):
        """Unknown specs are dropped; nothing valid means no choice."""
        result = await self.chooser.choose(["nope:standard", "", None], "cheapest")
        assert result.chosen_model_spec is None
        assert result.service_tier is None
        assert result.decision.reason == DecisionReason.NO_MODELS
        assert result.decision.considered == []

    @pytest.mark.asyncio
    async def test_duplicates_and_unknowns_filtered(self):
        """Candidates are deduplicated in order."""
        result = await self.chooser.choose(
            ["gpt-5:standard", "bogus:flex", "gpt-5", "gpt-5-mini:flex"],
            "cheapest",
        )
        assert [item.model_spec for item in result.decision.considered] == [
            "gpt-5:standard",
            "gpt-5-mini:flex",
        ]

    @pytest.mark.asyncio
    async def test_deterministic(self):
        """Same inputs and state give the same result."""
        candidates = ["gpt-5:standard", "gpt-5-mini:flex", "gpt-4.1:priority"]
        first = await self.chooser.choose(candidates, "smartest")
        second = await self.chooser.choose(candidates, "smartest")
        assert first.to_dict() == second.to_dict()

    @pytest.mark.asyncio
    async def test_decision_persisted_for_tenant(self):
        """The decision is written to the tenant's status record."""
        result = await self.chooser.choose(
            ["gpt-5-mini:flex", "gpt-5:standard"],
            "cheapest",
            tenant_key="tab-1",
            task_type="translate",
        )
        assert result.persist is not None
        assert result.persist.persisted

        stored = await self.tenants.get_model_decision("tab-1")
        assert stored["chosen_model_spec"] == "gpt-5-mini:flex"
        assert stored["task_type"] == "translate"
        assert stored["decision"]["reason"] == "MIN_COST"
        assert stored["updated_at"] == self.clock.now

    @pytest.mark.asyncio
    async def test_no_tenant_no_persist(self):
        result = await self.chooser.choose(["gpt-5-mini:flex"], "cheapest")
        assert result.persist is None

    @pytest.mark.asyncio
    async def test_decision_event(self):
        """Each decision emits a chooser.decision event."""
        await self.chooser.choose(["gpt-5-mini:flex"], "cheapest")
        events = self.events.find("chooser.decision")
        assert len(events) == 1
        assert "gpt-5-mini:flex" in events[0].message


class TestNormalizePolicy:
    """Test policy name normalization."""

    def test_names(self):
        assert normalize_policy("cheapest") == SelectionPolicy.CHEAPEST
        assert normalize_policy(" Smartest ") == SelectionPolicy.SMARTEST
        assert normalize_policy(SelectionPolicy.FASTEST) == SelectionPolicy.FASTEST

    def test_unknown_falls_back_to_fastest(self):
        assert normalize_policy("weird") == SelectionPolicy.FASTEST
        assert normalize_policy(None) == SelectionPolicy.FASTEST

    def test_legacy_mapping(self):
        """``{speed, preference}`` selections map onto policies."""
        assert normalize_policy({}) == SelectionPolicy.FASTEST
        assert normalize_policy({"speed": True, "preference": "cheapest"}) == SelectionPolicy.FASTEST
        assert normalize_policy({"speed": False, "preference": "smartest"}) == SelectionPolicy.SMARTEST
        assert normalize_policy({"speed": False, "preference": "cheapest"}) == SelectionPolicy.CHEAPEST
        assert normalize_policy({"speed": False}) == SelectionPolicy.FASTEST
