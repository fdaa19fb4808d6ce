"""Global configuration for modelgate."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional

from modelgate.benchmark_store import BenchmarkConfig
from modelgate.budget_store import BudgetConfig
from modelgate.diagnostics import DEFAULT_EVENT_LIMIT
from modelgate.inflight import LeaseConfig
from modelgate.job_queue import QueueConfig
from modelgate.performance_store import PerformanceConfig
from modelgate.rate_limiter import LimiterConfig
from modelgate.retry_policy import RetryConfig


DEFAULT_CANDIDATES: List[str] = [
    "gpt-5-mini:flex",
    "gpt-5-mini:standard",
    "gpt-4.1-mini:standard",
    "gpt-5:standard",
]

_SECTIONS = {
    "retry": RetryConfig,
    "limiter": LimiterConfig,
    "lease": LeaseConfig,
    "queue": QueueConfig,
    "performance": PerformanceConfig,
    "benchmark": BenchmarkConfig,
    "budget": BudgetConfig,
}


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _apply_section(section: Any, overrides: Dict[str, Any], name: str) -> Any:
    if not isinstance(overrides, dict):
        raise ValueError(f"config section '{name}' must be an object")
    known = {f.name for f in fields(section)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"unknown keys for '{name}': {', '.join(unknown)}")
    return replace(section, **overrides)


@dataclass
class BrokerConfig:
    """All broker settings, one dataclass per component."""
    retry: RetryConfig = field(default_factory=RetryConfig)
    limiter: LimiterConfig = field(default_factory=LimiterConfig)
    lease: LeaseConfig = field(default_factory=LeaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    benchmark: BenchmarkConfig = field(default_factory=BenchmarkConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    provider: str = "openai"
    db_path: Optional[str] = None
    events_file: Optional[str] = None
    event_limit: int = DEFAULT_EVENT_LIMIT
    policy: str = "fastest"
    candidates: List[str] = field(default_factory=lambda: list(DEFAULT_CANDIDATES))

    def with_overrides(self, overrides: Dict[str, Any]) -> "BrokerConfig":
        """
        Return a copy with section overrides applied.

        Args:
            overrides: e.g. {"retry": {"max_attempts": 5}, "provider": "openai"}

        Raises:
            ValueError: On unknown sections or keys
        """
        updated = replace(self)
        for name, value in (overrides or {}).items():
            if name in _SECTIONS:
                setattr(updated, name, _apply_section(getattr(updated, name), value, name))
            elif name in {"provider", "db_path", "events_file", "event_limit", "policy", "candidates"}:
                setattr(updated, name, value)
            else:
                raise ValueError(f"unknown config section '{name}'")
        return updated

    @classmethod
    def from_env(cls) -> "BrokerConfig":
        """
        Build config from environment variables.

        MODELGATE_CONFIG_JSON holds section overrides (malformed JSON is
        ignored); MODELGATE_DB_PATH, MODELGATE_EVENTS_FILE and
        MODELGATE_PROVIDER win over it.
        """
        config = cls()
        parsed = _parse_json_env("MODELGATE_CONFIG_JSON")
        if parsed:
            config = config.with_overrides(parsed)
        db_path = os.getenv("MODELGATE_DB_PATH")
        if db_path:
            config.db_path = db_path
        events_file = os.getenv("MODELGATE_EVENTS_FILE")
        if events_file:
            config.events_file = events_file
        provider = os.getenv("MODELGATE_PROVIDER")
        if provider:
            config.provider = provider.strip().lower()
        config.budget = replace(config.budget, default_provider=config.provider)
        return config
