"""Per-run logger: module log + durable `pipeline_run_logs` row + live fan-out."""

from __future__ import annotations

import logging
from typing import Any, Callable

import db
from logging_utils import get_logger
from pipeline import ledger
from pipeline.log_broadcaster import LogBroadcaster, LogEntry
from utils.time_utils import isoformat_utc

logger = get_logger(__name__)

_PY_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class RunLogger:
    def __init__(
        self,
        run_id: int,
        broadcaster: LogBroadcaster,
        *,
        session_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.run_id = int(run_id)
        self._broadcaster = broadcaster
        self._session_factory = session_factory

    def _session(self):
        factory = self._session_factory or db.SessionLocal
        return factory()

    def log(self, level: str, message: str, meta: dict[str, Any] | None = None) -> LogEntry:
        logger.log(_PY_LEVELS.get(level, logging.INFO), "[run %s] %s", self.run_id, message)

        session = self._session()
        try:
            row = ledger.append_log(session, self.run_id, level, message, meta)
            entry = LogEntry(
                run_id=self.run_id,
                level=level,
                message=message,
                timestamp=isoformat_utc(row.ts),
                meta=meta or None,
                id=row.id,
            )
        finally:
            session.close()

        self._broadcaster.publish(self.run_id, entry)
        return entry

    def debug(self, message: str, meta: dict[str, Any] | None = None) -> LogEntry:
        return self.log("debug", message, meta)

    def info(self, message: str, meta: dict[str, Any] | None = None) -> LogEntry:
        return self.log("info", message, meta)

    def warn(self, message: str, meta: dict[str, Any] | None = None) -> LogEntry:
        return self.log("warn", message, meta)

    def error(self, message: str, meta: dict[str, Any] | None = None) -> LogEntry:
        return self.log("error", message, meta)
