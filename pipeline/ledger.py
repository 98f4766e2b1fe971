"""Run ledger: runs, stage results, run logs, skipped rows and assets.

Functions take an open session. Writers commit so each ledger update is visible
to SSE readers and the admin API immediately; readers never commit.
"""

from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from logging_utils import get_logger
from models.assets import Asset
from models.pipeline_run_logs import PipelineRunLog
from models.pipeline_run_stages import PipelineRunStage
from models.pipeline_runs import TERMINAL_RUN_STATUSES, PipelineRun
from models.pipeline_skipped_rows import PipelineSkippedRow
from models.spend_entries import SpendEntry
from pipeline.counterparty_store import counterparty_model
from pipeline.errors import ValidationError
from utils.time_utils import isoformat_utc, utcnow

logger = get_logger(__name__)

MAX_PAGE_SIZE = 500


def _page(limit: int | None, offset: int | None, *, default: int = 100) -> tuple[int, int]:
    try:
        lim = int(limit) if limit is not None else default
    except (TypeError, ValueError):
        lim = default
    try:
        off = int(offset) if offset is not None else 0
    except (TypeError, ValueError):
        off = 0
    return max(1, min(lim, MAX_PAGE_SIZE)), max(0, off)


# --- assets ---


def get_asset(session: Session, asset_id: int) -> Asset | None:
    return session.get(Asset, asset_id)


def find_asset_by_checksum(session: Session, checksum: str) -> Asset | None:
    return (
        session.query(Asset)
        .filter(Asset.checksum == checksum)
        .order_by(Asset.id.desc())
        .first()
    )


def create_asset(
    session: Session,
    *,
    object_key: str,
    original_name: str,
    content_type: str | None,
    size_bytes: int | None,
    checksum: str | None,
) -> Asset:
    asset = Asset(
        object_key=object_key,
        original_name=original_name,
        content_type=content_type,
        size_bytes=size_bytes,
        checksum=checksum,
    )
    session.add(asset)
    session.commit()
    return asset


# --- runs ---


def create_run(
    session: Session,
    *,
    asset_id: int | None,
    dry_run: bool,
    from_stage: str | None,
    to_stage: str | None,
    org_type: str | None,
    params: dict[str, Any] | None,
    created_by: str | None,
    trigger: str,
) -> PipelineRun:
    run = PipelineRun(
        asset_id=asset_id,
        dry_run=bool(dry_run),
        from_stage=from_stage,
        to_stage=to_stage,
        org_type=org_type,
        params=params or None,
        created_by=created_by,
        trigger=trigger,
        status="pending",
    )
    session.add(run)
    session.commit()
    return run


def get_run(session: Session, run_id: int) -> PipelineRun | None:
    return session.get(PipelineRun, run_id)


def set_run_status(session: Session, run_id: int, status: str, *, error: str | None = None) -> None:
    values: dict[str, Any] = {"status": status}
    now = utcnow()
    if status == "running":
        values["started_at"] = now
        values["error"] = None
    elif status in TERMINAL_RUN_STATUSES:
        values["finished_at"] = now
    if error is not None:
        values["error"] = error
    session.query(PipelineRun).filter(PipelineRun.id == run_id).update(values, synchronize_session=False)
    session.commit()


def ensure_stage_rows(session: Session, run_id: int, stage_ids: Iterable[str]) -> None:
    existing = {
        sid
        for (sid,) in session.query(PipelineRunStage.stage_id).filter(PipelineRunStage.run_id == run_id)
    }
    for stage_id in stage_ids:
        if stage_id not in existing:
            session.add(PipelineRunStage(run_id=run_id, stage_id=stage_id, status="queued"))
    session.commit()


def set_stage_status(
    session: Session,
    run_id: int,
    stage_id: str,
    status: str,
    *,
    processed: int | None = None,
    skipped: int | None = None,
    matched: int | None = None,
    metrics: dict[str, Any] | None = None,
    warnings: list[str] | None = None,
    error: str | None = None,
) -> None:
    values: dict[str, Any] = {"status": status}
    now = utcnow()
    if status == "running":
        values["started_at"] = now
        values["finished_at"] = None
        values["error"] = None
    elif status in {"succeeded", "failed", "skipped"}:
        values["finished_at"] = now
    for key, value in (
        ("processed", processed),
        ("skipped", skipped),
        ("matched", matched),
        ("metrics", metrics),
        ("warnings", warnings),
        ("error", error),
    ):
        if value is not None:
            values[key] = value
    (
        session.query(PipelineRunStage)
        .filter(PipelineRunStage.run_id == run_id, PipelineRunStage.stage_id == stage_id)
        .update(values, synchronize_session=False)
    )
    session.commit()


def append_log(
    session: Session,
    run_id: int,
    level: str,
    message: str,
    meta: dict[str, Any] | None = None,
) -> PipelineRunLog:
    row = PipelineRunLog(run_id=run_id, ts=utcnow(), level=level, message=message, meta=meta or None)
    session.add(row)
    session.commit()
    return row


def record_skipped_rows(session: Session, run_id: int, stage_id: str, rows: list[dict[str, Any]]) -> int:
    """Persist skipped-row records (dicts with sheet_name/row_number/reason/detail/raw_data)."""

    if not rows:
        return 0
    session.add_all(PipelineSkippedRow(run_id=run_id, stage_id=stage_id, **r) for r in rows)
    session.commit()
    return len(rows)


def delete_run(session: Session, run_id: int) -> int:
    """Delete a run's imported spend and mark it `deleted`, atomically.

    Returns the number of spend rows removed. Already-deleted runs return 0.

    Raises:
        ValidationError: unknown run (`not_found`) or run still executing (`run_active`).
    """

    try:
        run = session.get(PipelineRun, run_id)
        if run is None:
            raise ValidationError(f"run {run_id} not found", code="not_found")
        if run.status == "deleted":
            return 0
        if run.status == "running":
            raise ValidationError(f"run {run_id} is still running", code="run_active")

        removed = 0
        if run.asset_id is not None:
            removed = (
                session.query(SpendEntry)
                .filter(SpendEntry.asset_id == run.asset_id)
                .delete(synchronize_session=False)
            )
        run.status = "deleted"
        run.deleted_at = utcnow()
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info("Deleted run %s | spend_rows_removed=%s", run_id, removed)
    return int(removed or 0)


# --- read path ---


def serialize_run(run: PipelineRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "asset_id": run.asset_id,
        "org_type": run.org_type,
        "trigger": run.trigger,
        "created_by": run.created_by,
        "status": run.status,
        "dry_run": bool(run.dry_run),
        "from_stage": run.from_stage,
        "to_stage": run.to_stage,
        "params": run.params,
        "error": run.error,
        "created_at": isoformat_utc(run.created_at),
        "started_at": isoformat_utc(run.started_at),
        "finished_at": isoformat_utc(run.finished_at),
        "deleted_at": isoformat_utc(run.deleted_at),
    }


def serialize_stage(stage: PipelineRunStage) -> dict[str, Any]:
    return {
        "stage_id": stage.stage_id,
        "status": stage.status,
        "processed": stage.processed,
        "skipped": stage.skipped,
        "matched": stage.matched,
        "metrics": stage.metrics,
        "warnings": stage.warnings,
        "error": stage.error,
        "started_at": isoformat_utc(stage.started_at),
        "finished_at": isoformat_utc(stage.finished_at),
    }


def serialize_log(row: PipelineRunLog) -> dict[str, Any]:
    d = {
        "id": row.id,
        "run_id": row.run_id,
        "level": row.level,
        "message": row.message,
        "timestamp": isoformat_utc(row.ts),
    }
    if row.meta:
        d["meta"] = row.meta
    return d


def serialize_skipped_row(row: PipelineSkippedRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "stage_id": row.stage_id,
        "sheet_name": row.sheet_name,
        "row_number": row.row_number,
        "reason": row.reason,
        "detail": row.detail,
        "raw_data": row.raw_data,
    }


def get_run_stages(session: Session, run_id: int) -> list[PipelineRunStage]:
    return (
        session.query(PipelineRunStage)
        .filter(PipelineRunStage.run_id == run_id)
        .order_by(PipelineRunStage.id)
        .all()
    )


def get_run_logs(
    session: Session, run_id: int, *, limit: int | None = 500, offset: int | None = 0
) -> list[PipelineRunLog]:
    lim, off = _page(limit, offset, default=500)
    return (
        session.query(PipelineRunLog)
        .filter(PipelineRunLog.run_id == run_id)
        .order_by(PipelineRunLog.id)
        .offset(off)
        .limit(lim)
        .all()
    )


def get_skipped_rows(
    session: Session, run_id: int, *, limit: int | None = 100, offset: int | None = 0
) -> list[PipelineSkippedRow]:
    lim, off = _page(limit, offset)
    return (
        session.query(PipelineSkippedRow)
        .filter(PipelineSkippedRow.run_id == run_id)
        .order_by(PipelineSkippedRow.id)
        .offset(off)
        .limit(lim)
        .all()
    )


def _count(session: Session, model, run_id: int) -> int:
    return int(session.query(func.count(model.id)).filter(model.run_id == run_id).scalar() or 0)


def get_run_detail(
    session: Session,
    run_id: int,
    *,
    log_limit: int | None = 500,
    log_offset: int | None = 0,
    skipped_limit: int | None = 100,
    skipped_offset: int | None = 0,
) -> dict[str, Any] | None:
    run = get_run(session, run_id)
    if run is None:
        return None

    asset = session.get(Asset, run.asset_id) if run.asset_id is not None else None
    spend_count = 0
    date_range = None
    if asset is not None:
        spend_count, first, last = session.query(
            func.count(SpendEntry.id), func.min(SpendEntry.payment_date), func.max(SpendEntry.payment_date)
        ).filter(SpendEntry.asset_id == asset.id).one()
        if first is not None:
            date_range = {"from": first.isoformat(), "to": last.isoformat()}

    return {
        "run": serialize_run(run),
        "asset": (
            {
                "id": asset.id,
                "object_key": asset.object_key,
                "original_name": asset.original_name,
                "content_type": asset.content_type,
                "size_bytes": asset.size_bytes,
                "checksum": asset.checksum,
            }
            if asset is not None
            else None
        ),
        "stages": [serialize_stage(s) for s in get_run_stages(session, run_id)],
        "logs": [serialize_log(r) for r in get_run_logs(session, run_id, limit=log_limit, offset=log_offset)],
        "logs_total": _count(session, PipelineRunLog, run_id),
        "skipped_rows": [
            serialize_skipped_row(r)
            for r in get_skipped_rows(session, run_id, limit=skipped_limit, offset=skipped_offset)
        ],
        "skipped_rows_total": _count(session, PipelineSkippedRow, run_id),
        "spend_entries": int(spend_count or 0),
        "payment_date_range": date_range,
    }


def list_runs(
    session: Session,
    *,
    status: str | None = None,
    limit: int | None = 50,
    offset: int | None = 0,
) -> list[PipelineRun]:
    lim, off = _page(limit, offset, default=50)
    q = session.query(PipelineRun)
    if status:
        q = q.filter(PipelineRun.status == status)
    return q.order_by(PipelineRun.id.desc()).offset(off).limit(lim).all()


def list_counterparties(
    session: Session,
    kind: str,
    *,
    status: str | None = None,
    q: str | None = None,
    limit: int | None = 50,
    offset: int | None = 0,
) -> tuple[list[Any], int]:
    model = counterparty_model(kind)
    lim, off = _page(limit, offset, default=50)
    lim = min(lim, 100)
    query = session.query(model)
    if status:
        query = query.filter(model.match_status == status)
    if q:
        query = query.filter(model.name.ilike(f"%{q.strip()}%"))
    total = query.count()
    rows = query.order_by(model.name).offset(off).limit(lim).all()
    return rows, int(total)


def serialize_counterparty(row: Any) -> dict[str, Any]:
    d = {
        "id": row.id,
        "name": row.name,
        "entity_id": row.entity_id,
        "match_status": row.match_status,
        "match_confidence": row.match_confidence,
        "manually_verified": bool(row.manually_verified),
        "match_attempted_at": isoformat_utc(row.match_attempted_at),
        "match_note": row.match_note,
        "candidate": (
            {
                "entity_type": row.candidate_entity_type,
                "registry_id": row.candidate_registry_id,
                "name": row.candidate_name,
            }
            if row.candidate_registry_id
            else None
        ),
    }
    if hasattr(row, "entity_type_hint"):
        d["entity_type_hint"] = row.entity_type_hint
    return d
