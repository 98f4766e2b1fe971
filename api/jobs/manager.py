"""In-process background work for the web app: the pipeline run queue and the
background reconciler, plus the lazily-built match engine they share."""

from __future__ import annotations

import queue
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from jobs.background_reconciler import BackgroundReconciler
from logging_utils import get_logger
from pipeline.executor import StageExecutor
from pipeline.log_broadcaster import log_broadcaster
from pipeline.match_engine import MatchEngine
from pipeline.services import build_match_engine

logger = get_logger(__name__)


@dataclass
class JobState:
    running: bool = False
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    error: Optional[str] = None
    stop_requested: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
            "stop_requested": self.stop_requested,
        }


class PipelineRunQueue:
    """FIFO of run ids drained by a single daemon worker thread."""

    def __init__(self, executor_factory: Callable[[], StageExecutor]) -> None:
        self._executor_factory = executor_factory
        self._queue: "queue.Queue[int]" = queue.Queue()
        self._lock = threading.Lock()
        self._state = JobState()
        self._thread: threading.Thread | None = None
        self._current: int | None = None
        self._cancel_events: dict[int, threading.Event] = {}

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._worker, name="pipeline_run_queue", daemon=True)
            self._thread.start()

    def enqueue(self, run_id: int) -> None:
        with self._lock:
            self._cancel_events.setdefault(run_id, threading.Event())
        self._queue.put(run_id)
        self._ensure_worker()
        logger.info("Enqueued run %s | queued=%s", run_id, self._queue.qsize())

    def request_cancel(self, run_id: int) -> bool:
        """Flag a queued or running run for cancellation. False if unknown to the queue."""

        with self._lock:
            event = self._cancel_events.get(run_id)
            if event is None:
                return False
            event.set()
        logger.info("Cancellation requested for run %s", run_id)
        return True

    def _worker(self) -> None:
        while True:
            run_id = self._queue.get()
            with self._lock:
                cancel_event = self._cancel_events.setdefault(run_id, threading.Event())
                self._current = run_id
                self._state.running = True
                self._state.started_at = time.time()
                self._state.ended_at = None
                self._state.error = None
            try:
                self._executor_factory().execute(run_id, cancel_event)
            except Exception:
                logger.exception("Run %s crashed in the queue worker", run_id)
                with self._lock:
                    self._state.error = traceback.format_exc()
            finally:
                with self._lock:
                    self._cancel_events.pop(run_id, None)
                    self._current = None
                    self._state.running = False
                    self._state.ended_at = time.time()
                self._queue.task_done()

    def join(self) -> None:
        """Block until every enqueued run has been processed."""

        self._queue.join()

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            d = self._state.as_dict()
            d["current_run_id"] = self._current
            d["queued"] = self._queue.qsize()
            d.pop("stop_requested", None)
            return d


_engine_lock = threading.Lock()
_match_engine: MatchEngine | None = None
_reconciler: BackgroundReconciler | None = None
_executor: StageExecutor | None = None


def get_match_engine() -> MatchEngine:
    global _match_engine
    with _engine_lock:
        if _match_engine is None:
            _match_engine = build_match_engine()
        return _match_engine


def get_background_reconciler() -> BackgroundReconciler:
    global _reconciler
    engine = get_match_engine()
    with _engine_lock:
        if _reconciler is None:
            _reconciler = BackgroundReconciler(engine)
        return _reconciler


def get_stage_executor() -> StageExecutor:
    global _executor
    engine = get_match_engine()
    with _engine_lock:
        if _executor is None:
            _executor = StageExecutor(match_engine=engine, broadcaster=log_broadcaster)
        return _executor


pipeline_run_queue = PipelineRunQueue(lambda: get_stage_executor())
