"""Durable key-value storage for modelgate state."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import sqlite3
from typing import Any, Callable, Dict, Iterable, Optional, Protocol

from modelgate.diagnostics import EventLog
from modelgate.duration import now_ms
from modelgate.schemas import PersistResult


logger = logging.getLogger("modelgate.storage")


class StorageError(Exception):
    """Raised when a storage backend cannot read or write."""

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(message)


class KeyValueStore(Protocol):
    """Durable key-value store interface."""

    async def get(self, defaults: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def set(self, patch: Dict[str, Any]) -> None:
        ...

    async def remove(self, keys: Iterable[str]) -> None:
        ...


class InMemoryKeyValueStore:
    """In-memory store (default). Values are deep-copied in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    async def get(self, defaults: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: copy.deepcopy(self._data[key]) if key in self._data else default
            for key, default in defaults.items()
        }

    async def set(self, patch: Dict[str, Any]) -> None:
        for key, value in patch.items():
            self._data[key] = copy.deepcopy(value)

    async def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)


class SQLiteKeyValueStore:
    """SQLite-backed store. Each key holds one JSON document."""

    def __init__(self, db_path: str = "modelgate.db"):
        self.db_path = db_path
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._init_schema()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open {db_path}: {exc}") from exc

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )
        self._conn.commit()

    async def get(self, defaults: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(defaults)
        if not defaults:
            return out
        keys = list(defaults)
        placeholders = ", ".join("?" for _ in keys)
        try:
            rows = self._conn.execute(
                f"SELECT key, value FROM kv WHERE key IN ({placeholders})",
                keys,
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Read failed: {exc}") from exc

        for row in rows:
            try:
                out[row["key"]] = json.loads(row["value"])
            except json.JSONDecodeError as exc:
                raise StorageError(f"Corrupt value: {exc}", key=row["key"]) from exc
        return out

    async def set(self, patch: Dict[str, Any]) -> None:
        ts = now_ms()
        try:
            rows = [(key, json.dumps(value), ts) for key, value in patch.items()]
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Value is not JSON serializable: {exc}") from exc
        try:
            self._conn.executemany(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value=excluded.value,
                    updated_at=excluded.updated_at
                """,
                rows,
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Write failed: {exc}") from exc

    async def remove(self, keys: Iterable[str]) -> None:
        try:
            self._conn.executemany("DELETE FROM kv WHERE key = ?", [(key,) for key in keys])
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Delete failed: {exc}") from exc

    def close(self) -> None:
        self._conn.close()


class NullKeyValueStore:
    """Store used when no durable backend is available. Reads return defaults; writes fail."""

    async def get(self, defaults: Dict[str, Any]) -> Dict[str, Any]:
        return dict(defaults)

    async def set(self, patch: Dict[str, Any]) -> None:
        raise StorageError("No durable store configured; write dropped")

    async def remove(self, keys: Iterable[str]) -> None:
        return None


class StoreBase:
    """
    Shared plumbing for durable components.

    Read failures degrade to defaults and write failures to a
    ``persisted_with_warning`` result; both emit a ``warn`` event. The
    ``_lock`` serializes read-modify-write sequences within this process.
    """

    area = "store"

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.store = store if store is not None else InMemoryKeyValueStore()
        self.events = events
        self._clock = clock or now_ms
        self._lock = asyncio.Lock()

    def _now(self, now: Optional[int] = None) -> int:
        return int(now) if now is not None else int(self._clock())

    def _emit(self, level: str, tag: str, message: str, **meta: Any) -> None:
        if self.events is None:
            return
        try:
            self.events.emit(level, tag, message, **meta)
        except Exception as exc:  # event sink is best effort
            logger.warning(f"Event sink failed for {tag}: {exc}")

    async def _read(self, key: str, default: Any) -> Any:
        try:
            data = await self.store.get({key: default})
        except StorageError as exc:
            logger.warning(f"{self.area}: read of {key} failed: {exc}")
            self._emit("warn", f"{self.area}.read_failed", str(exc), key=key)
            return copy.deepcopy(default)
        value = data.get(key, default)
        if not isinstance(value, type(default)) and default is not None:
            return copy.deepcopy(default)
        return value

    async def _write(self, patch: Dict[str, Any]) -> PersistResult:
        try:
            await self.store.set(patch)
        except StorageError as exc:
            logger.warning(f"{self.area}: write of {sorted(patch)} failed: {exc}")
            self._emit("warn", f"{self.area}.write_failed", str(exc), keys=sorted(patch))
            return PersistResult.with_warning(str(exc))
        return PersistResult.ok()
