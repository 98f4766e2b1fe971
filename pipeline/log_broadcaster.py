"""In-process fan-out of run log lines to live subscribers (SSE connections).

Each run keeps a bounded ring buffer so a subscriber that connects mid-run can
replay recent history. The buffer is a replay aid only: every entry is also
persisted by the run logger, and finished runs are served from the database.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from logging_utils import get_logger

logger = get_logger(__name__)

# callback(event, payload); event is "log" or "complete".
Subscriber = Callable[[str, dict[str, Any]], None]


@dataclass(frozen=True)
class LogEntry:
    run_id: int
    level: str
    message: str
    timestamp: str
    meta: dict[str, Any] | None = None
    # Durable row id (pipeline_run_logs.id) when persisted; used for de-duplication.
    id: int | None = None

    def as_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "run_id": self.run_id,
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.meta:
            d["meta"] = self.meta
        if self.id is not None:
            d["id"] = self.id
        return d

    @property
    def dedupe_key(self) -> str:
        if self.id is not None:
            return f"id:{self.id}"
        return f"{self.timestamp}-{self.message}"


class LogBroadcaster:
    def __init__(
        self,
        *,
        max_buffer: int = 500,
        buffer_ttl_seconds: float = 300.0,
        completed_grace_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_buffer = int(max_buffer)
        self._ttl = float(buffer_ttl_seconds)
        self._grace = float(completed_grace_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._subscribers: dict[int, list[Subscriber]] = {}
        self._buffers: dict[int, deque[LogEntry]] = {}
        self._touched: dict[int, float] = {}
        self._completed: dict[int, tuple[str, float]] = {}

    def subscribe(self, run_id: int, callback: Subscriber) -> Callable[[], None]:
        """Register `callback` for `run_id`; returns an idempotent unsubscribe."""

        with self._lock:
            self._subscribers.setdefault(run_id, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                subs = self._subscribers.get(run_id)
                if subs and callback in subs:
                    subs.remove(callback)
                if subs is not None and not subs:
                    self._subscribers.pop(run_id, None)

        return _unsubscribe

    def has_subscribers(self, run_id: int) -> bool:
        with self._lock:
            return bool(self._subscribers.get(run_id))

    def buffered(self, run_id: int) -> list[LogEntry]:
        with self._lock:
            return list(self._buffers.get(run_id, ()))

    def completed_status(self, run_id: int) -> str | None:
        with self._lock:
            done = self._completed.get(run_id)
            return done[0] if done else None

    def _fan_out(self, run_id: int, event: str, payload: dict[str, Any]) -> None:
        with self._lock:
            subs = list(self._subscribers.get(run_id, ()))
        for callback in subs:
            try:
                callback(event, payload)
            except Exception:
                logger.warning("Log subscriber failed for run %s", run_id, exc_info=True)

    def publish(self, run_id: int, entry: LogEntry) -> None:
        now = self._clock()
        with self._lock:
            buf = self._buffers.get(run_id)
            if buf is None:
                buf = self._buffers[run_id] = deque(maxlen=self._max_buffer)
            buf.append(entry)
            self._touched[run_id] = now
        self._fan_out(run_id, "log", entry.as_dict())
        self.cleanup(now=now)

    def complete(self, run_id: int, status: str) -> None:
        """Tell live subscribers the run reached `status`; buffer expires after a grace period."""

        with self._lock:
            self._completed[run_id] = (status, self._clock())
        self._fan_out(run_id, "complete", {"run_id": run_id, "status": status})

    def cleanup(self, *, now: float | None = None) -> None:
        now = self._clock() if now is None else now
        with self._lock:
            for run_id, touched in list(self._touched.items()):
                if now - touched > self._ttl:
                    self._buffers.pop(run_id, None)
                    self._touched.pop(run_id, None)
            for run_id, (_status, at) in list(self._completed.items()):
                if now - at > self._grace:
                    self._buffers.pop(run_id, None)
                    self._touched.pop(run_id, None)
                    self._completed.pop(run_id, None)


# Process-wide default used by the web app; tests construct their own.
log_broadcaster = LogBroadcaster()
