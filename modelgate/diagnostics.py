"""
Diagnostics for modelgate.

Bounded in-memory event log shared by every component. Events are also
mirrored to the ``modelgate.events`` logger and optionally appended to a
JSONL file.
"""

import json
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, asdict, field
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Optional

from modelgate.duration import now_ms


DEFAULT_EVENT_LIMIT = 800

LEVELS = ("info", "warn", "error")

_LOG_LEVELS = {
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class DiagnosticEvent:
    """A single diagnostic event."""
    ts: int
    level: str  # info, warn, error
    tag: str
    message: str
    meta: dict[str, Any] = field(default_factory=dict)
    seq: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class EventLog:
    """
    Ring buffer of diagnostic events.

    Oldest events are dropped once ``limit`` is reached. ``seq`` increases
    monotonically across the life of the log, including after ``clear``.
    """

    def __init__(
        self,
        limit: int = DEFAULT_EVENT_LIMIT,
        events_file: Optional[Path] = None,
        enable_logging: bool = True,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize the event log.

        Args:
            limit: Maximum number of events kept in memory
            events_file: Optional file to append events to (JSONL format)
            enable_logging: Whether to mirror events to the logger
            clock: Millisecond clock, defaults to wall time
        """
        self.limit = max(1, int(limit))
        self.events_file = events_file
        self.enable_logging = enable_logging
        self._clock = clock or now_ms
        self._lock = Lock()
        self._events: deque[DiagnosticEvent] = deque(maxlen=self.limit)
        self._seq = 0
        self._counters: dict[str, int] = defaultdict(int)

        self.logger = logging.getLogger("modelgate.events")

    def append(self, event: DiagnosticEvent) -> DiagnosticEvent:
        """Store an event, assigning its sequence number."""
        with self._lock:
            self._seq += 1
            event.seq = self._seq
            self._events.append(event)
            self._counters[f"{event.level}_total"] += 1
            self._counters[f"tag_{event.tag}"] += 1

        self._mirror(event)
        return event

    def emit(self, level: str, tag: str, message: str, **meta: Any) -> DiagnosticEvent:
        """Build and append an event in one call."""
        if level not in LEVELS:
            level = "info"
        event = DiagnosticEvent(
            ts=self._clock(),
            level=level,
            tag=str(tag),
            message=str(message),
            meta=dict(meta),
        )
        return self.append(event)

    def info(self, tag: str, message: str, **meta: Any) -> DiagnosticEvent:
        return self.emit("info", tag, message, **meta)

    def warn(self, tag: str, message: str, **meta: Any) -> DiagnosticEvent:
        return self.emit("warn", tag, message, **meta)

    def error(self, tag: str, message: str, **meta: Any) -> DiagnosticEvent:
        return self.emit("error", tag, message, **meta)

    def _mirror(self, event: DiagnosticEvent) -> None:
        # A broken sink must not break the caller.
        if self.events_file:
            try:
                with open(self.events_file, "a") as f:
                    f.write(json.dumps(event.to_dict(), default=str) + "\n")
            except OSError as exc:
                self.logger.warning(f"Could not write event file {self.events_file}: {exc}")

        if self.enable_logging:
            self.logger.log(
                _LOG_LEVELS.get(event.level, logging.INFO),
                f"[{event.tag}] {event.message} meta={event.meta}",
            )

    def tail(self, n: int = 50) -> list[DiagnosticEvent]:
        """Most recent ``n`` events, oldest first."""
        with self._lock:
            if n <= 0:
                return []
            return list(self._events)[-n:]

    def before(self, seq: int, n: int = 50) -> list[DiagnosticEvent]:
        """Up to ``n`` events with a sequence number below ``seq``, oldest first."""
        with self._lock:
            older = [event for event in self._events if event.seq < seq]
        return older[-n:] if n > 0 else []

    def find(self, tag: str) -> list[DiagnosticEvent]:
        with self._lock:
            return [event for event in self._events if event.tag == tag]

    def __len__(self) -> int:
        return len(self._events)

    @property
    def last_seq(self) -> int:
        return self._seq

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "buffered": len(self._events),
                "limit": self.limit,
                "last_seq": self._seq,
            }

    def clear(self) -> None:
        """Drop buffered events. Sequence numbers keep increasing."""
        with self._lock:
            self._events.clear()
            self._counters.clear()


def configure_logging(level: int = logging.INFO) -> logging.Logger:
    """Attach a stream handler to the ``modelgate`` logger once."""
    logger = logging.getLogger("modelgate")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
            )
        )
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
