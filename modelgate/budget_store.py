"""
Rate-limit budget tracking for modelgate.

Records the remote API's advertised request/token budget from response
headers, holds provider-wide cooldowns after 429 responses, and hands out
short-lived reservations so concurrent jobs do not overrun the budget.
"""

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Optional

from modelgate.diagnostics import EventLog
from modelgate.duration import is_finite_number, parse_ms
from modelgate.schemas import Availability, BudgetSnapshot, PersistResult, Reservation
from modelgate.storage import KeyValueStore, StoreBase


logger = logging.getLogger("modelgate.budget")

STORAGE_KEY = "rateLimitBudget"

HEADER_REMAINING_REQUESTS = "x-ratelimit-remaining-requests"
HEADER_REMAINING_TOKENS = "x-ratelimit-remaining-tokens"
HEADER_LIMIT_REQUESTS = "x-ratelimit-limit-requests"
HEADER_LIMIT_TOKENS = "x-ratelimit-limit-tokens"
HEADER_RESET_REQUESTS = "x-ratelimit-reset-requests"
HEADER_RESET_TOKENS = "x-ratelimit-reset-tokens"


@dataclass
class BudgetConfig:
    """Budget store configuration."""
    default_provider: str = "openai"
    default_lease_ms: int = 120000
    min_lease_ms: int = 10000
    default_cooldown_ms: int = 30000
    min_cooldown_ms: int = 250
    max_cooldown_ms: int = 15 * 60 * 1000
    unknown_reset_wait_ms: int = 60000


def header_value(headers: Any, key: str) -> Any:
    """Case-insensitive header lookup over a mapping or a ``get``-able object."""
    if not headers:
        return None
    if isinstance(headers, Mapping):
        if key in headers:
            return headers[key]
        lowered = key.lower()
        for name, value in headers.items():
            if str(name).lower() == lowered:
                return value
        return None
    getter = getattr(headers, "get", None)
    return getter(key) if callable(getter) else None


def parse_number(value) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if is_finite_number(number) else None


def parse_reset_ms(value) -> Optional[int]:
    """
    Parse a reset header into milliseconds.

    Duration strings ("6m0s") are parsed directly. Plain numbers above 1000
    are read as milliseconds, smaller ones as seconds.
    """
    if value is None or value == "":
        return None
    parsed = parse_ms(value) if isinstance(value, str) else None
    if parsed is not None:
        return parsed
    number = parse_number(value)
    if number is None:
        return None
    if number > 1000:
        return max(0, round(number))
    return max(0, round(number * 1000))


def _empty_row(provider: str, now: int) -> dict:
    return {
        "provider": provider,
        "updated_at": now,
        "cooldown_until_ts": None,
        "global": {},
        "per_model": {},
        "grants": {},
    }


class RateLimitBudgetStore(StoreBase):
    """
    Durable per-provider budget state.

    State layout under ``rateLimitBudget``::

        {"by_provider": {provider: {global, per_model, grants, cooldown_until_ts, updated_at}}}
    """

    area = "budget"

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        config: Optional[BudgetConfig] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(store, events=events, clock=clock)
        self.config = config or BudgetConfig()

    def _provider(self, provider: Optional[str]) -> str:
        raw = str(provider or "").strip().lower()
        return raw or self.config.default_provider

    async def _load(self) -> dict:
        state = await self._read(STORAGE_KEY, {})
        if not isinstance(state.get("by_provider"), dict):
            state["by_provider"] = {}
        return state

    def _row(self, state: dict, provider: str, now: int) -> dict:
        row = state["by_provider"].get(provider)
        if not isinstance(row, dict):
            row = _empty_row(provider, now)
        for key in ("global", "per_model", "grants"):
            if not isinstance(row.get(key), dict):
                row[key] = {}
        row["grants"] = {
            grant_id: grant
            for grant_id, grant in row["grants"].items()
            if isinstance(grant, dict) and (parse_number(grant.get("lease_until_ts")) or 0) > now
        }
        state["by_provider"][provider] = row
        return row

    @staticmethod
    def _remaining(source: Optional[dict], kind: str, now: int) -> Optional[float]:
        """Header-reported ``<kind>_remaining``, or the full limit once ``reset_at`` has passed."""
        if not source:
            return None
        reset_at = parse_number(source.get("reset_at"))
        if reset_at is not None and reset_at <= now:
            return parse_number(source.get(f"{kind}_limit"))
        return parse_number(source.get(f"{kind}_remaining"))

    @staticmethod
    def _sum_grants(grants: dict, model: Optional[str] = None) -> tuple[float, float]:
        requests = 0.0
        tokens = 0.0
        for grant in grants.values():
            if model and grant.get("model") and grant.get("model") != model:
                continue
            requests += max(0.0, parse_number(grant.get("est_requests")) or 0)
            tokens += max(0.0, parse_number(grant.get("est_tokens")) or 0)
        return requests, tokens

    # =========================================================================
    # HEADERS
    # =========================================================================

    async def update_from_headers(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        headers: Any = None,
        now: Optional[int] = None,
    ) -> PersistResult:
        """
        Fold rate-limit response headers into the provider and model budget.

        Absent headers leave the previous provider-wide values in place.
        """
        provider_key = self._provider(provider)
        ts = self._now(now)

        remaining_requests = parse_number(header_value(headers, HEADER_REMAINING_REQUESTS))
        remaining_tokens = parse_number(header_value(headers, HEADER_REMAINING_TOKENS))
        limit_requests = parse_number(header_value(headers, HEADER_LIMIT_REQUESTS))
        limit_tokens = parse_number(header_value(headers, HEADER_LIMIT_TOKENS))
        resets = [
            ts + ms
            for ms in (
                parse_reset_ms(header_value(headers, HEADER_RESET_REQUESTS)),
                parse_reset_ms(header_value(headers, HEADER_RESET_TOKENS)),
            )
            if ms is not None
        ]
        reset_at = min(resets) if resets else None

        observed = {
            "requests_remaining": remaining_requests,
            "tokens_remaining": remaining_tokens,
            "requests_limit": limit_requests,
            "tokens_limit": limit_tokens,
            "reset_at": reset_at,
        }
        if all(value is None for value in observed.values()):
            return PersistResult.skipped("no rate-limit headers")

        async with self._lock:
            state = await self._load()
            row = self._row(state, provider_key, ts)
            merged = dict(row["global"])
            for key, value in observed.items():
                if value is not None:
                    merged[key] = value
            row["global"] = merged
            if model:
                row["per_model"][str(model)] = {**observed, "updated_at": ts}
            row["updated_at"] = ts
            return await self._write({STORAGE_KEY: state})

    def _resolve_cooldown_ms(self, retry_after_ms, headers) -> int:
        wait = parse_number(retry_after_ms)
        if wait is None:
            wait = parse_number(header_value(headers, "retry-after-ms"))
        if wait is None:
            seconds = parse_number(header_value(headers, "retry-after"))
            if seconds is not None:
                wait = seconds * 1000
        if wait is None:
            resets = [
                ms
                for ms in (
                    parse_reset_ms(header_value(headers, HEADER_RESET_REQUESTS)),
                    parse_reset_ms(header_value(headers, HEADER_RESET_TOKENS)),
                )
                if ms is not None
            ]
            wait = min(resets) if resets else None
        if wait is None:
            wait = self.config.default_cooldown_ms
        return int(max(self.config.min_cooldown_ms, min(self.config.max_cooldown_ms, wait)))

    async def on_too_many_requests(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        retry_after_ms: Optional[float] = None,
        headers: Any = None,
        now: Optional[int] = None,
    ) -> PersistResult:
        """
        Start (or extend) a provider-wide cooldown after a 429.

        The cooldown never shrinks: the new end is the later of the existing
        one and ``now + wait``.
        """
        provider_key = self._provider(provider)
        ts = self._now(now)
        if headers:
            await self.update_from_headers(provider_key, model, headers, now=ts)

        wait = self._resolve_cooldown_ms(retry_after_ms, headers)
        async with self._lock:
            state = await self._load()
            row = self._row(state, provider_key, ts)
            existing = parse_number(row.get("cooldown_until_ts"))
            candidate = ts + wait
            row["cooldown_until_ts"] = int(max(existing, candidate)) if existing is not None else candidate
            row["updated_at"] = ts
            result = await self._write({STORAGE_KEY: state})

        logger.info(f"{provider_key}: cooldown for {wait}ms after 429")
        self._emit(
            "warn",
            "budget.cooldown",
            f"{provider_key} rate limited; cooling down {wait}ms",
            provider=provider_key,
            model=model,
            cooldown_until_ts=row["cooldown_until_ts"],
        )
        return result

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    async def get_snapshot(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        now: Optional[int] = None,
    ) -> BudgetSnapshot:
        """
        Live budget net of outstanding reservations.

        With ``model`` given and per-model data present, the per-model figures
        are used. During a cooldown both remaining counts read as 0.
        """
        provider_key = self._provider(provider)
        ts = self._now(now)
        state = await self._load()
        row = self._row(state, provider_key, ts)

        source = row["global"]
        grants_model = None
        if model and isinstance(row["per_model"].get(model), dict):
            source = row["per_model"][model]
            grants_model = model
        reserved_requests, reserved_tokens = self._sum_grants(row["grants"], grants_model)

        requests_remaining = self._remaining(source, "requests", ts)
        tokens_remaining = self._remaining(source, "tokens", ts)
        if requests_remaining is not None:
            requests_remaining -= reserved_requests
        if tokens_remaining is not None:
            tokens_remaining -= reserved_tokens

        cooldown = parse_number(row.get("cooldown_until_ts"))
        snapshot = BudgetSnapshot(
            provider=provider_key,
            model=model,
            requests_remaining=requests_remaining,
            tokens_remaining=tokens_remaining,
            requests_limit=parse_number(source.get("requests_limit")),
            tokens_limit=parse_number(source.get("tokens_limit")),
            reset_at=int(source["reset_at"]) if parse_number(source.get("reset_at")) is not None else None,
            cooldown_until_ts=int(cooldown) if cooldown is not None else None,
            reserved_requests=reserved_requests,
            reserved_tokens=reserved_tokens,
            grants_count=len(row["grants"]),
            updated_at=int(parse_number(row.get("updated_at")) or ts),
        )
        if snapshot.in_cooldown(ts):
            snapshot.requests_remaining = 0
            snapshot.tokens_remaining = 0
        return snapshot

    async def get_availability(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Availability:
        snap = await self.get_snapshot(provider, model, now=now)

        def fraction(remaining, limit):
            if remaining is None or not limit:
                return None
            return max(0.0, min(1.0, remaining / limit))

        return Availability(
            rpm_remaining=snap.requests_remaining,
            tpm_remaining=snap.tokens_remaining,
            rpm_fraction=fraction(snap.requests_remaining, snap.requests_limit),
            tpm_fraction=fraction(snap.tokens_remaining, snap.tokens_limit),
            cooldown_until_ts=snap.cooldown_until_ts if snap.in_cooldown(self._now(now)) else None,
        )

    async def cooldown_remaining_ms(self, provider: Optional[str] = None, now: Optional[int] = None) -> int:
        """Milliseconds left in the provider's cooldown, 0 if none."""
        ts = self._now(now)
        snap = await self.get_snapshot(provider, now=ts)
        if not snap.in_cooldown(ts):
            return 0
        return snap.cooldown_until_ts - ts

    # =========================================================================
    # RESERVATIONS
    # =========================================================================

    async def reserve(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        job_id: Optional[str] = None,
        est_tokens: float = 0,
        est_requests: float = 1,
        lease_ms: Optional[int] = None,
        now: Optional[int] = None,
    ) -> Reservation:
        """
        Reserve part of the remaining budget.

        Refused during a cooldown, or when the remaining budget net of live
        grants is below the estimate. Unknown budgets never refuse.
        """
        provider_key = self._provider(provider)
        ts = self._now(now)
        need_requests = max(1.0, parse_number(est_requests) or 1)
        need_tokens = max(0.0, parse_number(est_tokens) or 0)

        async with self._lock:
            state = await self._load()
            row = self._row(state, provider_key, ts)

            cooldown = parse_number(row.get("cooldown_until_ts"))
            if cooldown is not None and cooldown > ts:
                return Reservation(ok=False, wait_ms=int(cooldown - ts), reason="cooldown")

            reserved_requests, reserved_tokens = self._sum_grants(row["grants"])
            glob = row["global"]
            model_row = row["per_model"].get(model) if model else None
            model_row = model_row if isinstance(model_row, dict) else None
            model_requests, model_tokens = self._sum_grants(row["grants"], model) if model else (0.0, 0.0)

            def net(source, kind, reserved):
                value = self._remaining(source, kind, ts)
                return value - reserved if value is not None else None

            global_req = net(glob, "requests", reserved_requests)
            global_tok = net(glob, "tokens", reserved_tokens)
            model_req = net(model_row, "requests", model_requests)
            model_tok = net(model_row, "tokens", model_tokens)

            # Only resets still ahead bound the wait.
            resets = [
                parse_number(source.get("reset_at"))
                for source in (glob, model_row)
                if source and (parse_number(source.get("reset_at")) or 0) > ts
            ]
            wait = int(min(resets) - ts) if resets else self.config.unknown_reset_wait_ms
            wait = max(1, wait)

            if any(value is not None and value < need_requests for value in (global_req, model_req)):
                return Reservation(ok=False, wait_ms=wait, reason="requests_limit")
            if any(value is not None and value < need_tokens for value in (global_tok, model_tok)):
                return Reservation(ok=False, wait_ms=wait, reason="tokens_limit")

            lease = self.config.default_lease_ms
            if lease_ms is not None and parse_number(lease_ms) is not None:
                lease = max(self.config.min_lease_ms, int(lease_ms))
            grant_id = f"grant:{provider_key}:{ts}:{uuid.uuid4().hex[:8]}"
            row["grants"][grant_id] = {
                "grant_id": grant_id,
                "job_id": job_id,
                "model": model,
                "est_tokens": need_tokens,
                "est_requests": need_requests,
                "created_ts": ts,
                "lease_until_ts": ts + lease,
            }
            row["updated_at"] = ts
            result = await self._write({STORAGE_KEY: state})

        if not result.persisted:
            logger.warning(f"Grant {grant_id} not persisted: {result.warning}")
        return Reservation(ok=True, grant_id=grant_id, wait_ms=0)

    async def release(self, grant_id: str, now: Optional[int] = None) -> bool:
        """Drop a grant. Returns False if it was unknown or already expired."""
        safe_id = str(grant_id or "").strip()
        if not safe_id:
            return False
        ts = self._now(now)
        async with self._lock:
            state = await self._load()
            released = False
            for row in state["by_provider"].values():
                grants = row.get("grants") if isinstance(row, dict) else None
                if isinstance(grants, dict) and safe_id in grants:
                    del grants[safe_id]
                    row["updated_at"] = ts
                    released = True
            if not released:
                return False
            await self._write({STORAGE_KEY: state})
        return True
