"""Stage executor: creates runs and drives them through the ordered stages.

A run walks `STAGE_IDS` in order, restricted to the inclusive
``from_stage..to_stage`` slice. Every stage row is finalized (succeeded /
failed / skipped) before the next one starts, and every outcome is written to
the run ledger and the live log stream.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError

import db
from logging_utils import get_logger
from models.assets import Asset
from models.pipeline_runs import ORG_TYPES
from pipeline import ledger
from pipeline.errors import PipelineError, RunCancelled, ValidationError
from pipeline.log_broadcaster import LogBroadcaster, log_broadcaster
from pipeline.match_engine import MatchEngine
from pipeline.run_logger import RunLogger
from pipeline.stage_types import Stage, StageContext, StageResult
from pipeline.stages.enrich_locations import EnrichLocationsStage
from pipeline.stages.import_spend import Fetcher, ImportSpendStage
from pipeline.stages.match_counterparties import MatchCounterpartiesStage
from pipeline.stages.refresh_spend_totals import RefreshSpendTotalsStage

logger = get_logger(__name__)

STAGE_IDS = (
    "import_spend",
    "match_suppliers",
    "match_buyers",
    "refresh_spend_totals",
    "enrich_locations",
)


def default_stages(
    match_engine: MatchEngine,
    *,
    fetch: Fetcher | None = None,
    geocoder: Any | None = None,
) -> list[Stage]:
    return [
        ImportSpendStage(fetch=fetch),
        MatchCounterpartiesStage("supplier", match_engine),
        MatchCounterpartiesStage("buyer", match_engine),
        RefreshSpendTotalsStage(),
        EnrichLocationsStage(geocoder=geocoder),
    ]


def select_stage_ids(
    stage_ids: Iterable[str], from_stage: str | None, to_stage: str | None
) -> list[str]:
    """Inclusive slice of `stage_ids`.

    Raises:
        ValidationError: unknown stage id or from_stage after to_stage.
    """

    ids = list(stage_ids)
    if from_stage is not None and from_stage not in ids:
        raise ValidationError(f"unknown from_stage: {from_stage}", code="invalid_from_stage")
    if to_stage is not None and to_stage not in ids:
        raise ValidationError(f"unknown to_stage: {to_stage}", code="invalid_to_stage")
    start = ids.index(from_stage) if from_stage else 0
    end = ids.index(to_stage) if to_stage else len(ids) - 1
    if start > end:
        raise ValidationError(
            f"from_stage {from_stage} comes after to_stage {to_stage}", code="invalid_stage_range"
        )
    return ids[start : end + 1]


class StageExecutor:
    def __init__(
        self,
        stages: list[Stage] | None = None,
        *,
        match_engine: MatchEngine | None = None,
        broadcaster: LogBroadcaster | None = None,
        session_factory: Callable[[], Any] | None = None,
    ) -> None:
        if stages is None:
            if match_engine is None:
                raise ValueError("either stages or match_engine is required")
            stages = default_stages(match_engine)
        self.stages = list(stages)
        self.stage_ids = [s.stage_id for s in self.stages]
        if len(set(self.stage_ids)) != len(self.stage_ids):
            raise ValueError(f"duplicate stage ids: {self.stage_ids}")
        self.broadcaster = broadcaster or log_broadcaster
        self._session_factory = session_factory

    def session(self):
        return (self._session_factory or db.SessionLocal)()

    def create_run(
        self,
        asset_id: int | None,
        dry_run: bool = False,
        *,
        from_stage: str | None = None,
        to_stage: str | None = None,
        org_type: str | None = None,
        params: dict[str, Any] | None = None,
        created_by: str | None = None,
        trigger: str = "api",
    ) -> int:
        """Validate and record a pending run; returns its id.

        Raises:
            ValidationError: bad stage range, unknown asset or unknown org_type.
                Nothing is written in that case.
        """

        select_stage_ids(self.stage_ids, from_stage, to_stage)
        if org_type is not None and org_type not in ORG_TYPES:
            raise ValidationError(f"unknown org_type: {org_type}", code="invalid_org_type")

        session = self.session()
        try:
            if asset_id is not None and session.get(Asset, asset_id) is None:
                raise ValidationError(f"asset {asset_id} not found", code="asset_not_found")
            run = ledger.create_run(
                session,
                asset_id=asset_id,
                dry_run=dry_run,
                from_stage=from_stage,
                to_stage=to_stage,
                org_type=org_type,
                params=params,
                created_by=created_by,
                trigger=trigger,
            )
            run_id = run.id
        finally:
            session.close()

        logger.info(
            "Created run %s | asset=%s dry_run=%s stages=%s..%s trigger=%s",
            run_id,
            asset_id,
            dry_run,
            from_stage or self.stage_ids[0],
            to_stage or self.stage_ids[-1],
            trigger,
        )
        return run_id

    def _set_run_status(self, run_id: int, status: str, *, error: str | None = None) -> None:
        session = self.session()
        try:
            ledger.set_run_status(session, run_id, status, error=error)
        finally:
            session.close()

    def _set_stage(self, run_id: int, stage_id: str, status: str, **values: Any) -> None:
        session = self.session()
        try:
            ledger.set_stage_status(session, run_id, stage_id, status, **values)
        finally:
            session.close()

    def execute(self, run_id: int, cancel_event: threading.Event | None = None) -> str:
        """Run a pending run to completion; returns the final status.

        Stage failures are recorded, never raised. Runs that are not pending are
        left untouched and their current status is returned. If the ledger or
        log stream fails outside stage handling, the run is marked failed as far
        as the store allows and the error is re-raised.
        """

        session = self.session()
        try:
            run = ledger.get_run(session, run_id)
            if run is None:
                raise ValidationError(f"run {run_id} not found", code="not_found")
            if run.status != "pending":
                logger.warning("Run %s is %s; not executing", run_id, run.status)
                return run.status
            selected = select_stage_ids(self.stage_ids, run.from_stage, run.to_stage)
            base_ctx = {
                "dry_run": bool(run.dry_run),
                "asset_id": run.asset_id,
                "org_type": run.org_type,
                "params": dict(run.params or {}),
            }
            ledger.ensure_stage_rows(session, run_id, selected)
        finally:
            session.close()

        log = RunLogger(run_id, self.broadcaster, session_factory=self._session_factory)
        progress: dict[str, Any] = {"stage": None, "remaining": list(selected)}
        try:
            return self._drive(run_id, selected, base_ctx, log, cancel_event, progress)
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            logger.exception("Run %s aborted outside stage handling", run_id)
            self._abort(run_id, progress, message)
            raise

    def _drive(
        self,
        run_id: int,
        selected: list[str],
        base_ctx: dict[str, Any],
        log: RunLogger,
        cancel_event: threading.Event | None,
        progress: dict[str, Any],
    ) -> str:
        self._set_run_status(run_id, "running")
        log.info(
            "Pipeline run started",
            {"stages": selected, "dry_run": base_ctx["dry_run"], "asset_id": base_ctx["asset_id"]},
        )

        if not selected:
            status, error = "failed", "no_stages"
            log.error("Pipeline run failed", {"error": error})
            self._finish(run_id, status, error)
            return status

        stages = {s.stage_id: s for s in self.stages}
        status, error = "succeeded", None
        remaining = progress["remaining"]

        for stage_id in selected:
            ctx = StageContext(
                run_id=run_id,
                stage_id=stage_id,
                log=log,
                cancel_event=cancel_event,
                session_factory=self._session_factory,
                **base_ctx,
            )
            try:
                ctx.check_cancelled()
            except RunCancelled:
                status, error = "failed", "cancelled"
                break

            remaining.remove(stage_id)
            progress["stage"] = stage_id
            try:
                self._set_stage(run_id, stage_id, "running")
                log.info("Stage started", {"stage": stage_id})
                result = stages[stage_id].run(ctx)
                self._finish_stage(run_id, stage_id, result, log)
            except RunCancelled as e:
                self._set_stage(run_id, stage_id, "failed", error="cancelled")
                progress["stage"] = None
                log.warn("Stage cancelled", {"stage": stage_id, "detail": str(e)})
                status, error = "failed", "cancelled"
                break
            except Exception as e:
                if not isinstance(e, PipelineError):
                    logger.exception("Stage %s crashed for run %s", stage_id, run_id)
                message = f"{type(e).__name__}: {e}"
                self._set_stage(run_id, stage_id, "failed", error=message)
                progress["stage"] = None
                meta = {"stage": stage_id, "error": message}
                if isinstance(e, PipelineError):
                    meta["code"] = e.code
                log.error("Stage error", meta)
                status, error = "failed", message
                break
            progress["stage"] = None

        for stage_id in list(remaining):
            self._set_stage(run_id, stage_id, "skipped", metrics={"reason": "not_reached"})
            remaining.remove(stage_id)

        if status == "succeeded":
            log.info("Pipeline run succeeded")
        else:
            log.error("Pipeline run failed", {"error": error})
        self._finish(run_id, status, error)
        return status

    def _abort(self, run_id: int, progress: dict[str, Any], message: str) -> None:
        """Best-effort finalization after a ledger or log write failed mid-run."""

        updates = []
        if progress["stage"] is not None:
            updates.append((progress["stage"], "failed", {"error": message}))
        updates.extend((sid, "skipped", {"metrics": {"reason": "not_reached"}}) for sid in progress["remaining"])
        for stage_id, status, values in updates:
            try:
                self._set_stage(run_id, stage_id, status, **values)
            except SQLAlchemyError:
                logger.exception("Could not finalize stage %s of run %s", stage_id, run_id)
        try:
            self._set_run_status(run_id, "failed", error=message)
        except SQLAlchemyError:
            logger.exception("Could not mark run %s failed", run_id)
        self.broadcaster.complete(run_id, "failed")

    def _finish_stage(self, run_id: int, stage_id: str, result: StageResult, log: RunLogger) -> None:
        self._set_stage(
            run_id,
            stage_id,
            result.status if result.status in {"succeeded", "skipped"} else "succeeded",
            processed=result.processed,
            skipped=result.skipped,
            matched=result.matched,
            metrics=result.metrics,
            warnings=result.warnings,
        )
        log.info(
            "Stage finished",
            {
                "stage": stage_id,
                "status": result.status,
                "processed": result.processed,
                "skipped": result.skipped,
                "matched": result.matched,
            },
        )

    def _finish(self, run_id: int, status: str, error: str | None) -> None:
        self._set_run_status(run_id, status, error=error)
        self.broadcaster.complete(run_id, status)
        logger.info("Run %s finished | status=%s error=%s", run_id, status, error)
