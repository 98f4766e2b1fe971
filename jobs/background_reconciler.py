"""Background reconciler: keeps matching pending suppliers/buyers in small batches.

Runs on one daemon thread inside the web process (ENABLE_BACKGROUND_RECONCILER=1)
or standalone via this module's CLI.
"""

from __future__ import annotations

import argparse
import threading
import time
from typing import Any, Callable, Iterable

from db import init_db
from logging_utils import get_logger
from pipeline.match_engine import MatchEngine
from pipeline.services import build_match_engine
from settings import get_setting

logger = get_logger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Match pending suppliers/buyers against the registries")
    p.add_argument("--once", action="store_true", help="Run a single batch and exit")
    p.add_argument("--batch-size", type=int, default=None, help="Records per batch")
    p.add_argument("--interval", type=float, default=None, help="Seconds between batches")
    p.add_argument(
        "--kind",
        action="append",
        choices=("supplier", "buyer"),
        default=None,
        help="Counterparty kind to reconcile (repeatable; default both)",
    )
    return p.parse_args(argv)


class BackgroundReconciler:
    def __init__(
        self,
        engine: MatchEngine,
        *,
        interval_seconds: float | None = None,
        batch_size: int | None = None,
        kinds: Iterable[str] = ("supplier", "buyer"),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.interval_seconds = float(
            interval_seconds if interval_seconds is not None else get_setting("RECONCILER_INTERVAL_SECONDS", 30)
        )
        self.batch_size = int(batch_size if batch_size is not None else get_setting("RECONCILER_BATCH_SIZE", 20))
        self.kinds = tuple(kinds)
        self._clock = clock

        self._lock = threading.Lock()
        self._batch_guard = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        self._started_at: float | None = None
        self._last_batch_at: float | None = None
        self._last_result: dict[str, Any] | None = None
        self._last_error: str | None = None
        self._batches = 0

    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the loop thread. Returns False if it is already running."""

        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return False
            self._stop.clear()
            self._started_at = self._clock()
            self._thread = threading.Thread(target=self._loop, name="background_reconciler", daemon=True)
            self._thread.start()
        logger.info(
            "Background reconciler started | interval=%ss batch_size=%s kinds=%s",
            self.interval_seconds,
            self.batch_size,
            ",".join(self.kinds),
        )
        return True

    def stop(self, timeout: float | None = 10.0) -> bool:
        """Signal the loop to stop and join it. Returns False if it was not running."""

        with self._lock:
            thread = self._thread
        if thread is None:
            return False
        self._stop.set()
        thread.join(timeout)
        with self._lock:
            if self._thread is thread and not thread.is_alive():
                self._thread = None
        logger.info("Background reconciler stopped")
        return True

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_batch()
            except Exception:
                logger.exception("Background reconciler batch failed")
            self._stop.wait(self.interval_seconds)

    def run_batch(self) -> dict[str, Any] | None:
        """Match up to `batch_size` pending records. Returns None if a batch is already running."""

        if not self._batch_guard.acquire(blocking=False):
            logger.debug("Reconciler batch already running; skipping")
            return None
        try:
            try:
                pending = {kind: self.engine.count_pending(kind) for kind in self.kinds}
                budget = self.batch_size
                result: dict[str, Any] = {"pending": pending, "kinds": {}}
                for kind in self.kinds:
                    if budget <= 0 or not pending[kind]:
                        continue
                    stats = self.engine.match_pending(kind, limit=budget)
                    budget -= stats.processed + stats.skipped
                    result["kinds"][kind] = stats.as_dict()
            except Exception as e:
                with self._lock:
                    self._last_error = f"{type(e).__name__}: {e}"
                    self._last_batch_at = self._clock()
                raise

            with self._lock:
                self._batches += 1
                self._last_batch_at = self._clock()
                self._last_result = result
                self._last_error = None
            if result["kinds"]:
                logger.info("Reconciler batch done | %s", result)
            return result
        finally:
            self._batch_guard.release()

    def get_state(self) -> dict[str, Any]:
        with self._lock:
            running = self._thread is not None and self._thread.is_alive()
            return {
                "running": running,
                "started_at": self._started_at,
                "last_batch_at": self._last_batch_at,
                "batches": self._batches,
                "last_result": self._last_result,
                "error": self._last_error,
                "stop_requested": self._stop.is_set(),
                "interval_seconds": self.interval_seconds,
                "batch_size": self.batch_size,
            }


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    init_db()

    reconciler = BackgroundReconciler(
        build_match_engine(),
        interval_seconds=args.interval,
        batch_size=args.batch_size,
        kinds=args.kind or ("supplier", "buyer"),
    )
    if args.once:
        result = reconciler.run_batch()
        logger.info("background_reconciler single batch complete | %s", result)
        return

    reconciler.start()
    try:
        while reconciler.is_running():
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping reconciler")
    finally:
        reconciler.stop()


if __name__ == "__main__":
    main()
