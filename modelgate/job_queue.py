"""
Fair multi-tenant job queue for modelgate.

Each tenant has its own sub-queue ordered by priority then arrival. Tenants
are served by weighted round-robin: the active tenant gets ``active_weight``
consecutive turns, everyone else one, and a tenant with nothing ready gives
up its turn. State is durable so the queue survives restarts.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional

from modelgate.diagnostics import EventLog
from modelgate.schemas import PersistResult, QueueEntry, QueueStatus
from modelgate.storage import KeyValueStore, StoreBase


logger = logging.getLogger("modelgate.queue")

STORAGE_KEY = "jobQueue"

MIN_PRIORITY = -100
MAX_PRIORITY = 100


@dataclass
class QueueConfig:
    """Dispatch queue configuration."""
    active_weight: int = 2
    lease_ms: int = 2 * 60 * 1000
    default_tenant: str = "default"


def normalize_priority(value) -> float:
    """Clamp to [-100, 100]; anything non-numeric is 0."""
    if isinstance(value, bool) or value is None:
        return 0
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(numeric):
        return 0
    return max(MIN_PRIORITY, min(MAX_PRIORITY, numeric))


def _empty_state() -> dict:
    return {
        "entries": {},
        "tenant_order": [],
        "cursor": 0,
        "credit": 0,
        "active_tenant_key": None,
        "seq": 0,
    }


class JobQueue(StoreBase):
    """
    Durable weighted round-robin queue.

    Dequeue order is a pure function of the state and the call sequence, so
    identical call sequences dequeue identically.
    """

    area = "queue"

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        config: Optional[QueueConfig] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(store, events=events, clock=clock)
        self.config = config or QueueConfig()

    # =========================================================================
    # STATE
    # =========================================================================

    async def _load(self) -> dict:
        raw = await self._read(STORAGE_KEY, {})
        state = _empty_state()
        state.update({key: raw[key] for key in state if key in raw})
        entries = raw.get("entries") if isinstance(raw.get("entries"), dict) else {}
        state["entries"] = {
            job_id: QueueEntry.from_dict({**row, "job_id": job_id})
            for job_id, row in entries.items()
            if isinstance(row, dict)
        }
        if not isinstance(state["tenant_order"], list):
            state["tenant_order"] = []
        state["cursor"] = int(state["cursor"]) if isinstance(state["cursor"], int) else 0
        state["credit"] = int(state["credit"]) if isinstance(state["credit"], int) else 0
        state["seq"] = int(state["seq"]) if isinstance(state["seq"], int) else 0
        self._rebuild_order(state)
        return state

    async def _save(self, state: dict) -> PersistResult:
        raw = {**state, "entries": {job_id: entry.to_dict() for job_id, entry in state["entries"].items()}}
        return await self._write({STORAGE_KEY: raw})

    @staticmethod
    def _rebuild_order(state: dict) -> None:
        """Drop tenants with no entries, append new ones, and keep the cursor on the same tenant."""
        old = [str(t) for t in state["tenant_order"]]
        first_seen: dict[str, int] = {}
        for entry in state["entries"].values():
            seq = first_seen.get(entry.tenant_key)
            if seq is None or entry.seq < seq:
                first_seen[entry.tenant_key] = entry.seq

        new_order = [t for t in old if t in first_seen]
        new_order += sorted((t for t in first_seen if t not in new_order), key=lambda t: first_seen[t])

        cursor = 0
        credit = state["credit"]
        if old and new_order:
            start = state["cursor"] % len(old)
            for offset in range(len(old)):
                tenant = old[(start + offset) % len(old)]
                if tenant in first_seen:
                    cursor = new_order.index(tenant)
                    if offset:
                        credit = 0
                    break
        else:
            credit = 0

        state["tenant_order"] = new_order
        state["cursor"] = cursor
        state["credit"] = credit

    def _pick_for_tenant(self, state: dict, tenant_key: str, now: int) -> Optional[QueueEntry]:
        ready = [
            entry for entry in state["entries"].values()
            if entry.tenant_key == tenant_key and entry.is_ready(now)
        ]
        if not ready:
            return None
        return min(ready, key=lambda entry: (-entry.priority, entry.seq, entry.job_id))

    def _weight(self, state: dict, tenant_key: str) -> int:
        if state["active_tenant_key"] is not None and tenant_key == state["active_tenant_key"]:
            return max(1, int(self.config.active_weight))
        return 1

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def enqueue(
        self,
        job_id: str,
        priority: float = 0,
        reason: str = "",
        tenant_key: Optional[str] = None,
        payload: Any = None,
        now: Optional[int] = None,
    ) -> QueueEntry:
        """
        Add (or re-queue) a job.

        A job that is already queued keeps its place in arrival order. A job
        that is running stays running under its current lease; only its
        priority, reason and payload are updated.
        """
        safe_id = str(job_id or "").strip()
        if not safe_id:
            raise ValueError("job_id is required")
        ts = self._now(now)

        async with self._lock:
            state = await self._load()
            prev = state["entries"].get(safe_id)
            if prev is not None:
                seq = prev.seq
            else:
                state["seq"] += 1
                seq = state["seq"]
            tenant = tenant_key or (prev.tenant_key if prev else None) or self.config.default_tenant
            running = prev is not None and prev.status == QueueStatus.RUNNING
            entry = QueueEntry(
                tenant_key=str(tenant),
                job_id=safe_id,
                priority=normalize_priority(priority),
                enqueued_at=prev.enqueued_at if prev else ts,
                payload=payload if payload is not None else (prev.payload if prev else None),
                reason=reason if isinstance(reason, str) else "",
                status=QueueStatus.RUNNING if running else QueueStatus.QUEUED,
                next_at_ts=prev.next_at_ts if running else 0,
                lease_until_ts=prev.lease_until_ts if running else None,
                seq=seq,
                dequeued_count=prev.dequeued_count if prev else 0,
            )
            state["entries"][safe_id] = entry
            self._rebuild_order(state)
            await self._save(state)
        return entry

    async def dequeue_next(
        self,
        now: Optional[int] = None,
        active_tenant_key: Optional[str] = None,
    ) -> Optional[QueueEntry]:
        """
        Take the next job by weighted round-robin.

        The picked entry becomes ``running`` with a lease. Returns None when no
        tenant has ready work; see ``next_ready_at`` for when to try again.
        """
        ts = self._now(now)
        async with self._lock:
            state = await self._load()
            if active_tenant_key is not None:
                state["active_tenant_key"] = str(active_tenant_key)

            order = state["tenant_order"]
            if not order:
                return None

            picked = None
            for offset in range(len(order)):
                index = (state["cursor"] + offset) % len(order)
                tenant = order[index]
                if offset:
                    state["credit"] = 0
                picked = self._pick_for_tenant(state, tenant, ts)
                if picked is None:
                    continue
                state["credit"] += 1
                if state["credit"] >= self._weight(state, tenant):
                    state["cursor"] = (index + 1) % len(order)
                    state["credit"] = 0
                else:
                    state["cursor"] = index
                break

            if picked is None:
                return None

            picked.status = QueueStatus.RUNNING
            picked.lease_until_ts = ts + self.config.lease_ms
            picked.next_at_ts = 0
            picked.dequeued_count += 1
            await self._save(state)
        return picked

    async def _update(self, job_id: str, **changes) -> Optional[QueueEntry]:
        async with self._lock:
            state = await self._load()
            entry = state["entries"].get(str(job_id or "").strip())
            if entry is None:
                return None
            for key, value in changes.items():
                setattr(entry, key, value)
            await self._save(state)
        return entry

    async def mark_waiting(self, job_id: str, next_at_ts: int, reason: str = "") -> Optional[QueueEntry]:
        """Park a job until ``next_at_ts`` (e.g. a retry backoff)."""
        changes: dict[str, Any] = {
            "status": QueueStatus.WAITING,
            "next_at_ts": int(next_at_ts) if next_at_ts is not None else 0,
            "lease_until_ts": None,
        }
        if reason:
            changes["reason"] = reason
        return await self._update(job_id, **changes)

    async def requeue(self, job_id: str) -> bool:
        """Put a running or waiting job back in line, keeping its arrival order."""
        entry = await self._update(job_id, status=QueueStatus.QUEUED, next_at_ts=0, lease_until_ts=None)
        return entry is not None

    async def mark_done(self, job_id: str) -> bool:
        async with self._lock:
            state = await self._load()
            if state["entries"].pop(str(job_id or "").strip(), None) is None:
                return False
            self._rebuild_order(state)
            await self._save(state)
        return True

    async def requeue_expired(self, now: Optional[int] = None) -> list[str]:
        """Return running jobs whose lease has lapsed to the queue."""
        ts = self._now(now)
        async with self._lock:
            state = await self._load()
            expired = sorted(
                job_id for job_id, entry in state["entries"].items()
                if entry.status == QueueStatus.RUNNING
                and entry.lease_until_ts is not None
                and entry.lease_until_ts <= ts
            )
            for job_id in expired:
                entry = state["entries"][job_id]
                entry.status = QueueStatus.QUEUED
                entry.lease_until_ts = None
                entry.next_at_ts = 0
            if expired:
                await self._save(state)
        if expired:
            logger.info(f"Requeued {len(expired)} expired jobs")
            self._emit("warn", "queue.requeue_expired", f"Requeued {len(expired)} expired jobs", job_ids=expired)
        return expired

    async def set_active_tenant(self, tenant_key: Optional[str]) -> Optional[str]:
        async with self._lock:
            state = await self._load()
            state["active_tenant_key"] = str(tenant_key) if tenant_key is not None else None
            state["credit"] = 0
            await self._save(state)
        return state["active_tenant_key"]

    async def get(self, job_id: str) -> Optional[QueueEntry]:
        state = await self._load()
        return state["entries"].get(job_id)

    async def entries(self) -> list[QueueEntry]:
        state = await self._load()
        return sorted(state["entries"].values(), key=lambda entry: entry.seq)

    @staticmethod
    def _next_ready_at(state: dict) -> Optional[int]:
        waiting = [
            entry.next_at_ts for entry in state["entries"].values()
            if entry.status == QueueStatus.WAITING
        ]
        return min(waiting) if waiting else None

    async def next_ready_at(self) -> Optional[int]:
        """Earliest time a waiting job becomes ready, or None."""
        return self._next_ready_at(await self._load())

    async def stats(self) -> dict:
        state = await self._load()
        entries = list(state["entries"].values())
        return {
            "total": len(entries),
            "queued_count": sum(1 for e in entries if e.status == QueueStatus.QUEUED),
            "running_count": sum(1 for e in entries if e.status == QueueStatus.RUNNING),
            "waiting_count": sum(1 for e in entries if e.status == QueueStatus.WAITING),
            "active_tenant_key": state["active_tenant_key"],
            "tenant_count": len(state["tenant_order"]),
            "tenant_order": list(state["tenant_order"]),
            "next_at_ts": self._next_ready_at(state),
        }
