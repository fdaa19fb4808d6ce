"""
Data schemas for modelgate.

All registry, store, decision and queue data structures. Persisted records
round-trip through plain dicts; unknown fields are ignored on load and
missing fields fall back to their defaults.
"""

from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from typing import Any, Optional


class ModelTier(str, Enum):
    """Service tiers a model can be called with."""
    FLEX = "flex"
    STANDARD = "standard"
    PRIORITY = "priority"


class SelectionPolicy(str, Enum):
    """Model selection policies."""
    FASTEST = "fastest"
    CHEAPEST = "cheapest"
    SMARTEST = "smartest"


class DecisionReason(str, Enum):
    """Why the chooser picked what it picked."""
    NO_MODELS = "NO_MODELS"
    MIN_COST = "MIN_COST"
    MAX_RANK = "MAX_RANK"
    NO_BENCH = "NO_BENCH"
    MIN_LATENCY = "MIN_LATENCY"


class SampleKind(str, Enum):
    """Source of a performance sample."""
    REAL = "real"    # Production traffic
    BENCH = "bench"  # Calibration probe


class ErrorKind(str, Enum):
    """Closed failure taxonomy produced by the retry classifier."""
    TAB_GONE = "TAB_GONE"
    ABORTED = "ABORTED"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    TRANSPORT_DISCONNECTED = "TRANSPORT_DISCONNECTED"
    BACKPRESSURE = "BACKPRESSURE"
    LEASE_EXPIRED = "LEASE_EXPIRED"
    NO_PROGRESS = "NO_PROGRESS"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"


class InflightStatus(str, Enum):
    """In-flight ledger record states."""
    RUNNING = "running"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueueStatus(str, Enum):
    """Dispatch queue entry states."""
    QUEUED = "queued"
    RUNNING = "running"
    WAITING = "waiting"


class PersistStatus(str, Enum):
    """Outcome of a durable write."""
    PERSISTED = "persisted"
    PERSISTED_WITH_WARNING = "persisted_with_warning"
    SKIPPED = "skipped"


def _load(cls, data: Optional[dict]) -> dict:
    """Keep only the keys that are fields of ``cls``."""
    if not isinstance(data, dict):
        return {}
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in data.items() if key in names}


def _number(value) -> Optional[float]:
    """Coerce persisted numeric values, rejecting bools, NaN and infinities."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if numeric != numeric or numeric in (float("inf"), float("-inf")):
        return None
    return numeric


def _int(value) -> Optional[int]:
    numeric = _number(value)
    return int(numeric) if numeric is not None else None


@dataclass
class PersistResult:
    """
    Result of a durable write.

    Stores never raise on persistence failure; they return a result that
    says whether the write landed.
    """
    status: PersistStatus = PersistStatus.PERSISTED
    warning: Optional[str] = None

    @property
    def persisted(self) -> bool:
        return self.status == PersistStatus.PERSISTED

    @property
    def degraded(self) -> bool:
        return self.status == PersistStatus.PERSISTED_WITH_WARNING

    @classmethod
    def ok(cls) -> "PersistResult":
        return cls(PersistStatus.PERSISTED)

    @classmethod
    def skipped(cls, reason: str) -> "PersistResult":
        return cls(PersistStatus.SKIPPED, reason)

    @classmethod
    def with_warning(cls, warning: str) -> "PersistResult":
        return cls(PersistStatus.PERSISTED_WITH_WARNING, warning)


@dataclass(frozen=True)
class RegistryEntry:
    """
    Price and capability metadata for one model id at one service tier.

    Prices are USD per 1M tokens. ``sum_1m`` is None when either price is
    unknown; unknown cost is never treated as zero.
    """
    id: str
    tier: ModelTier
    family: str
    specialized: bool
    notes: str
    capability_rank: int
    input_price: Optional[float]
    output_price: Optional[float]
    cached_input_price: Optional[float]
    sum_1m: Optional[float]

    @property
    def spec(self) -> str:
        return f"{self.id}:{self.tier.value}"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["spec"] = self.spec
        return data


@dataclass
class PerformanceRecord:
    """Rolling throughput/latency statistics for one model spec."""
    ewma_tps: Optional[float] = None
    ewma_latency_ms: Optional[float] = None
    samples: int = 0
    last_kind: Optional[str] = None
    last_output_tokens: Optional[int] = None
    last_total_tokens: Optional[int] = None
    updated_at: Optional[int] = None
    last_write_at: Optional[int] = None
    last_bench_at: Optional[int] = None

    @property
    def has_tps(self) -> bool:
        return self.ewma_tps is not None and self.ewma_tps > 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PerformanceRecord":
        src = _load(cls, data)
        return cls(
            ewma_tps=_number(src.get("ewma_tps")),
            ewma_latency_ms=_number(src.get("ewma_latency_ms")),
            samples=_int(src.get("samples")) or 0,
            last_kind=src.get("last_kind"),
            last_output_tokens=_int(src.get("last_output_tokens")),
            last_total_tokens=_int(src.get("last_total_tokens")),
            updated_at=_int(src.get("updated_at")),
            last_write_at=_int(src.get("last_write_at")),
            last_bench_at=_int(src.get("last_bench_at")),
        )


@dataclass
class BenchmarkRecord:
    """Result of explicit benchmark runs for one model spec."""
    median_ms: Optional[float] = None
    samples: int = 0
    updated_at: Optional[int] = None
    last_attempt_at: Optional[int] = None
    last_error: Optional[dict] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BenchmarkRecord":
        src = _load(cls, data)
        return cls(
            median_ms=_number(src.get("median_ms")),
            samples=_int(src.get("samples")) or 0,
            updated_at=_int(src.get("updated_at")),
            last_attempt_at=_int(src.get("last_attempt_at")),
            last_error=src.get("last_error") if isinstance(src.get("last_error"), dict) else None,
        )


@dataclass
class BudgetSnapshot:
    """Live view of the remote API's advertised budget for a provider/model."""
    provider: str
    model: Optional[str] = None
    requests_remaining: Optional[float] = None
    tokens_remaining: Optional[float] = None
    requests_limit: Optional[float] = None
    tokens_limit: Optional[float] = None
    reset_at: Optional[int] = None
    cooldown_until_ts: Optional[int] = None
    reserved_requests: float = 0
    reserved_tokens: float = 0
    grants_count: int = 0
    updated_at: Optional[int] = None

    def in_cooldown(self, now: int) -> bool:
        return self.cooldown_until_ts is not None and self.cooldown_until_ts > now

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Availability:
    """Budget/availability snapshot exposed to callers and UI collaborators."""
    rpm_remaining: Optional[float]
    tpm_remaining: Optional[float]
    rpm_fraction: Optional[float]
    tpm_fraction: Optional[float]
    cooldown_until_ts: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Reservation:
    """Result of a budget reservation attempt."""
    ok: bool
    grant_id: Optional[str] = None
    wait_ms: int = 0
    reason: Optional[str] = None


@dataclass
class ClassifiedError:
    """A failure mapped into the closed taxonomy."""
    kind: ErrorKind
    is_retryable: bool
    message: str = ""
    http_status: Optional[int] = None
    network: bool = False
    retry_after_ms: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "is_retryable": self.is_retryable,
            "message": self.message,
            "http_status": self.http_status,
            "network": self.network,
            "retry_after_ms": self.retry_after_ms,
        }


@dataclass
class InflightRecord:
    """A request currently being attempted, written before network I/O."""
    request_id: str
    status: InflightStatus = InflightStatus.RUNNING
    lease_until_ts: Optional[int] = None
    attempt: int = 1
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    tenant_key: Optional[str] = None
    job_id: Optional[str] = None
    model_spec: Optional[str] = None
    error: Optional[dict] = None
    context: dict = field(default_factory=dict)

    def is_expired(self, now: int) -> bool:
        return self.lease_until_ts is not None and self.lease_until_ts <= now

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "InflightRecord":
        src = _load(cls, data)
        try:
            status = InflightStatus(src.get("status", InflightStatus.RUNNING.value))
        except ValueError:
            status = InflightStatus.RUNNING
        return cls(
            request_id=str(src.get("request_id", "")),
            status=status,
            lease_until_ts=_int(src.get("lease_until_ts")),
            attempt=max(1, _int(src.get("attempt")) or 1),
            created_at=_int(src.get("created_at")),
            updated_at=_int(src.get("updated_at")),
            tenant_key=src.get("tenant_key"),
            job_id=src.get("job_id"),
            model_spec=src.get("model_spec"),
            error=src.get("error") if isinstance(src.get("error"), dict) else None,
            context=dict(src.get("context") or {}),
        )


@dataclass
class QueueEntry:
    """One unit of work waiting in a tenant's sub-queue."""
    tenant_key: str
    job_id: str
    priority: float = 0
    enqueued_at: Optional[int] = None
    payload: Any = None
    reason: str = ""
    status: QueueStatus = QueueStatus.QUEUED
    next_at_ts: int = 0
    lease_until_ts: Optional[int] = None
    seq: int = 0
    dequeued_count: int = 0

    def is_ready(self, now: int) -> bool:
        if self.status == QueueStatus.QUEUED:
            return True
        return self.status == QueueStatus.WAITING and self.next_at_ts <= now

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "QueueEntry":
        src = _load(cls, data)
        try:
            status = QueueStatus(src.get("status", QueueStatus.QUEUED.value))
        except ValueError:
            status = QueueStatus.QUEUED
        return cls(
            tenant_key=str(src.get("tenant_key", "")),
            job_id=str(src.get("job_id", "")),
            priority=_number(src.get("priority")) or 0,
            enqueued_at=_int(src.get("enqueued_at")),
            payload=src.get("payload"),
            reason=src.get("reason") if isinstance(src.get("reason"), str) else "",
            status=status,
            next_at_ts=_int(src.get("next_at_ts")) or 0,
            lease_until_ts=_int(src.get("lease_until_ts")),
            seq=_int(src.get("seq")) or 0,
            dequeued_count=_int(src.get("dequeued_count")) or 0,
        )


@dataclass
class ConsideredModel:
    """Snapshot of one candidate at decision time."""
    model_spec: str
    model_id: Optional[str] = None
    tier: Optional[str] = None
    sum_1m: Optional[float] = None
    capability_rank: Optional[int] = None
    median_ms: Optional[float] = None
    latency_source: Optional[str] = None  # "bench" or "traffic"


@dataclass
class Decision:
    """Policy, reason and the candidate snapshot behind a choice."""
    policy: SelectionPolicy
    reason: DecisionReason
    considered: list[ConsideredModel] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "policy": self.policy.value,
            "reason": self.reason.value,
            "considered": [asdict(item) for item in self.considered],
        }


@dataclass
class ChooserResult:
    """
    The chooser's answer.

    ``persist`` reports whether the decision was written to the tenant's
    status record (None when no tenant was given).
    """
    chosen_model_spec: Optional[str]
    chosen_model_id: Optional[str]
    service_tier: Optional[str]
    decision: Decision
    persist: Optional[PersistResult] = None

    def to_dict(self) -> dict:
        return {
            "chosen_model_spec": self.chosen_model_spec,
            "chosen_model_id": self.chosen_model_id,
            "service_tier": self.service_tier,
            "decision": self.decision.to_dict(),
        }
