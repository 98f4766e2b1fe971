from __future__ import annotations

import abc
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import db
from pipeline.errors import RunCancelled
from pipeline.run_logger import RunLogger


@dataclass
class StageContext:
    """What a stage sees of its run."""

    run_id: int
    stage_id: str
    dry_run: bool
    log: RunLogger
    asset_id: int | None = None
    org_type: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    cancel_event: threading.Event | None = None
    session_factory: Callable[[], Any] | None = None

    def session(self):
        return (self.session_factory or db.SessionLocal)()

    def is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self.is_cancelled():
            raise RunCancelled(f"run {self.run_id} cancelled during {self.stage_id}")


@dataclass
class StageResult:
    # succeeded | skipped
    status: str = "succeeded"
    processed: int = 0
    skipped: int = 0
    matched: int = 0
    metrics: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "processed": self.processed,
            "skipped": self.skipped,
            "matched": self.matched,
            "metrics": self.metrics,
            "warnings": self.warnings,
        }


class Stage(abc.ABC):
    """One pipeline step. Stages must be safe to re-run on the same asset."""

    stage_id: str

    @abc.abstractmethod
    def run(self, ctx: StageContext) -> StageResult:  # pragma: no cover
        raise NotImplementedError

    @staticmethod
    def skipped(reason: str) -> StageResult:
        return StageResult(status="skipped", metrics={"reason": reason})
