"""
Model chooser for modelgate.

Picks one model spec out of a candidate list according to a selection
policy, using registry prices and capability ranks plus measured latency.
"""

import logging
import math
from collections.abc import Mapping
from typing import Callable, Optional

from modelgate.benchmark_store import ModelBenchmarkStore
from modelgate.benchmarker import BenchmarkScheduler, NullBenchmarkScheduler
from modelgate.diagnostics import EventLog
from modelgate.duration import now_ms
from modelgate.performance_store import ModelPerformanceStore
from modelgate.registry import ModelRegistry, map_service_tier
from modelgate.schemas import (
    ChooserResult,
    ConsideredModel,
    Decision,
    DecisionReason,
    RegistryEntry,
    SelectionPolicy,
)
from modelgate.tenant_state import TenantStatusStore


logger = logging.getLogger("modelgate.chooser")


def normalize_policy(value) -> SelectionPolicy:
    """
    Map a policy name or a legacy ``{speed, preference}`` selection to a policy.

    Unknown values fall back to ``fastest``.
    """
    if isinstance(value, SelectionPolicy):
        return value
    if isinstance(value, Mapping):
        if value.get("speed", True) is not False:
            return SelectionPolicy.FASTEST
        preference = str(value.get("preference") or "").strip().lower()
        if preference == SelectionPolicy.SMARTEST.value:
            return SelectionPolicy.SMARTEST
        if preference == SelectionPolicy.CHEAPEST.value:
            return SelectionPolicy.CHEAPEST
        return SelectionPolicy.FASTEST
    raw = str(value or "").strip().lower()
    for policy in SelectionPolicy:
        if policy.value == raw:
            return policy
    return SelectionPolicy.FASTEST


def _cheapest_key(item: ConsideredModel):
    return (item.sum_1m if item.sum_1m is not None else math.inf, item.model_spec)


def _smartest_key(item: ConsideredModel):
    return (-(item.capability_rank or 0),) + _cheapest_key(item)


def _fastest_key(item: ConsideredModel):
    return (item.median_ms,) + _smartest_key(item)


class ModelChooser:
    """
    Deterministic model choice.

    ``cheapest`` minimizes the per-1M price sum, ``smartest`` maximizes the
    capability rank, ``fastest`` minimizes benchmark median latency. While
    any candidate lacks a fresh benchmark median, ``fastest`` answers with
    the cheapest model and schedules a background benchmark instead of
    waiting.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        perf_store: ModelPerformanceStore,
        bench_store: ModelBenchmarkStore,
        tenant_store: Optional[TenantStatusStore] = None,
        scheduler: Optional[BenchmarkScheduler] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.registry = registry
        self.perf_store = perf_store
        self.bench_store = bench_store
        self.tenant_store = tenant_store
        self.scheduler = scheduler or NullBenchmarkScheduler()
        self.events = events
        self._clock = clock or now_ms

    def filter_candidates(self, candidates) -> list[RegistryEntry]:
        """Registry entries for ``candidates``, deduplicated in order."""
        entries = []
        seen = set()
        for spec in candidates or []:
            entry = self.registry.get(spec)
            if entry is None or entry.spec in seen:
                continue
            seen.add(entry.spec)
            entries.append(entry)
        return entries

    async def _considered(self, entry: RegistryEntry, now: int) -> ConsideredModel:
        item = ConsideredModel(
            model_spec=entry.spec,
            model_id=entry.id,
            tier=entry.tier.value,
            sum_1m=entry.sum_1m,
            capability_rank=entry.capability_rank,
        )
        bench = await self.bench_store.get(entry.spec, now=now)
        if bench is not None and bench.median_ms is not None:
            item.median_ms = bench.median_ms
            item.latency_source = "bench"
            return item
        perf = await self.perf_store.get(entry.spec, now=now)
        if perf is not None and perf.ewma_latency_ms is not None:
            item.median_ms = perf.ewma_latency_ms
            item.latency_source = "traffic"
        return item

    async def _request_probes(self, missing: list[str], now: int) -> list[str]:
        # Traffic latency does not stand in for a bench median, so only the
        # bench interval gates specs that have none.
        perf_all = await self.perf_store.get_all()
        to_probe = [spec for spec in missing if self.perf_store.bench_allowed(perf_all.get(spec), now)]
        for spec in to_probe:
            await self.perf_store.mark_bench_at(spec, now=now)
        if to_probe:
            self.scheduler.schedule(to_probe, reason="fastest")
        return to_probe

    async def choose(
        self,
        candidates,
        policy="fastest",
        tenant_key: Optional[str] = None,
        task_type: Optional[str] = None,
        now: Optional[int] = None,
    ) -> ChooserResult:
        """
        Choose a model spec.

        Args:
            candidates: Model specs to choose from; non-registry specs are dropped
            policy: fastest, cheapest, smartest or a legacy selection mapping
            tenant_key: When given, the decision is stored on the tenant's status
            task_type: Free-form label stored with the decision
            now: Current time in ms (defaults to the clock)

        Returns:
            ChooserResult. ``chosen_model_spec`` is None when no candidate is valid.
        """
        ts = int(now) if now is not None else self._clock()
        selected = normalize_policy(policy)
        entries = self.filter_candidates(candidates)

        considered = [await self._considered(entry, ts) for entry in entries]
        chosen: Optional[ConsideredModel] = None

        if not considered:
            reason = DecisionReason.NO_MODELS
        elif selected == SelectionPolicy.CHEAPEST:
            chosen = min(considered, key=_cheapest_key)
            reason = DecisionReason.MIN_COST
        elif selected == SelectionPolicy.SMARTEST:
            chosen = min(considered, key=_smartest_key)
            reason = DecisionReason.MAX_RANK
        else:
            missing = [item.model_spec for item in considered if item.latency_source != "bench"]
            if missing:
                probed = await self._request_probes(missing, ts)
                chosen = min(considered, key=_cheapest_key)
                reason = DecisionReason.NO_BENCH
                logger.info(f"No fresh benchmark for {missing}; probing {probed}, using cheapest")
            else:
                chosen = min(considered, key=_fastest_key)
                reason = DecisionReason.MIN_LATENCY

        entry = self.registry.get(chosen.model_spec) if chosen else None
        result = ChooserResult(
            chosen_model_spec=entry.spec if entry else None,
            chosen_model_id=entry.id if entry else None,
            service_tier=map_service_tier(entry.tier) if entry else None,
            decision=Decision(policy=selected, reason=reason, considered=considered),
        )

        if tenant_key and self.tenant_store is not None:
            result.persist = await self.tenant_store.set_model_decision(
                tenant_key,
                {**result.to_dict(), "task_type": task_type},
                now=ts,
            )

        if self.events is not None:
            self.events.emit(
                "info",
                "chooser.decision",
                f"{selected.value}: {result.chosen_model_spec} ({reason.value})",
                tenant_key=tenant_key,
                candidates=len(considered),
            )
        return result
