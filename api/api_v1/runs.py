from __future__ import annotations

import json
import queue

from flask import Blueprint, Response, jsonify, request

import db
from api.api_v1.common import int_arg, parse_body
from api.jobs import manager as jobs
from api.schemas.api_responses import fail, ok
from api.schemas.requests import CreateRunRequest
from logging_utils import get_logger
from models.pipeline_runs import TERMINAL_RUN_STATUSES
from pipeline import ledger
from pipeline.log_broadcaster import log_broadcaster

logger = get_logger(__name__)

runs_v1_bp = Blueprint("runs_v1", __name__)

# Seconds between SSE keep-alive comments.
SSE_PING_SECONDS = 15.0
SSE_REPLAY_LIMIT = 500


@runs_v1_bp.route("/runs", methods=["POST"])
def create_run():
    """Create a pipeline run and enqueue it on the background worker."""

    body = parse_body(CreateRunRequest)
    executor = jobs.get_stage_executor()
    run_id = executor.create_run(
        body.asset_id,
        body.dry_run,
        from_stage=body.from_stage,
        to_stage=body.to_stage,
        org_type=body.org_type,
        params=body.params,
        created_by=body.created_by,
        trigger="api",
    )
    jobs.pipeline_run_queue.enqueue(run_id)

    session = db.SessionLocal()
    try:
        data = ledger.serialize_run(ledger.get_run(session, run_id))
    finally:
        session.close()
    return jsonify(ok(data)), 202


@runs_v1_bp.route("/runs", methods=["GET"])
def list_runs():
    status = (request.args.get("status") or "").strip() or None
    session = db.SessionLocal()
    try:
        runs = ledger.list_runs(
            session,
            status=status,
            limit=int_arg("limit", 50),
            offset=int_arg("offset", 0),
        )
        data = [ledger.serialize_run(r) for r in runs]
    finally:
        session.close()
    return jsonify(ok(data))


@runs_v1_bp.route("/runs/<int:run_id>", methods=["GET"])
def get_run(run_id: int):
    """Run detail.

    Query params:
    - log_limit / log_offset: page of run logs (default 500 / 0)
    - skipped_limit / skipped_offset: page of skipped rows (default 100 / 0)
    """

    session = db.SessionLocal()
    try:
        data = ledger.get_run_detail(
            session,
            run_id,
            log_limit=int_arg("log_limit", 500),
            log_offset=int_arg("log_offset", 0),
            skipped_limit=int_arg("skipped_limit", 100),
            skipped_offset=int_arg("skipped_offset", 0),
        )
    finally:
        session.close()
    if data is None:
        return jsonify(fail(f"run {run_id} not found", code="not_found")), 404
    return jsonify(ok(data))


@runs_v1_bp.route("/runs/<int:run_id>", methods=["DELETE"])
def delete_run(run_id: int):
    session = db.SessionLocal()
    try:
        removed = ledger.delete_run(session, run_id)
    finally:
        session.close()
    return jsonify(ok({"run_id": run_id, "status": "deleted", "spend_rows_removed": removed}))


@runs_v1_bp.route("/runs/<int:run_id>/cancel", methods=["POST"])
def cancel_run(run_id: int):
    session = db.SessionLocal()
    try:
        run = ledger.get_run(session, run_id)
        if run is None:
            return jsonify(fail(f"run {run_id} not found", code="not_found")), 404
        status = run.status
    finally:
        session.close()

    if status in TERMINAL_RUN_STATUSES:
        return jsonify(fail(f"run {run_id} is already {status}", code="run_not_pending")), 409

    if jobs.pipeline_run_queue.request_cancel(run_id):
        return jsonify(ok({"run_id": run_id, "cancel_requested": True}))

    if status == "pending":
        # Not owned by this process's worker: nothing will pick it up here.
        session = db.SessionLocal()
        try:
            ledger.set_run_status(session, run_id, "failed", error="cancelled")
        finally:
            session.close()
        log_broadcaster.complete(run_id, "failed")
        return jsonify(ok({"run_id": run_id, "cancel_requested": True, "status": "failed"}))

    return (
        jsonify(fail(f"run {run_id} is executing outside this process", code="run_active")),
        409,
    )


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def _log_key(payload: dict) -> str:
    if payload.get("id") is not None:
        return f"id:{payload['id']}"
    return f"{payload.get('timestamp')}-{payload.get('message')}"


def _stored_status(run_id: int) -> str | None:
    session = db.SessionLocal()
    try:
        run = ledger.get_run(session, run_id)
        return run.status if run is not None else None
    finally:
        session.close()


@runs_v1_bp.route("/runs/<int:run_id>/stream", methods=["GET"])
def stream_run(run_id: int):
    """Server-sent events: `connected`, then `log`* and a final `complete`.

    Finished runs are replayed from the database. Live runs replay the
    broadcaster buffer, then stream new lines until the run completes.
    """

    session = db.SessionLocal()
    try:
        run = ledger.get_run(session, run_id)
        if run is None:
            return jsonify(fail(f"run {run_id} not found", code="not_found")), 404
        status = run.status
        stored = []
        if status in TERMINAL_RUN_STATUSES:
            stored = [
                ledger.serialize_log(r)
                for r in ledger.get_run_logs(session, run_id, limit=SSE_REPLAY_LIMIT)
            ]
    finally:
        session.close()

    if status in TERMINAL_RUN_STATUSES:

        def replay():
            yield _sse("connected", {"run_id": run_id})
            for entry in stored:
                yield _sse("log", entry)
            yield _sse("complete", {"run_id": run_id, "status": status})

        return _event_stream(replay())

    def live():
        events: "queue.Queue[tuple[str, dict]]" = queue.Queue()
        unsubscribe = log_broadcaster.subscribe(run_id, lambda event, payload: events.put((event, payload)))
        sent: set[str] = set()
        try:
            yield _sse("connected", {"run_id": run_id})
            for entry in log_broadcaster.buffered(run_id):
                if entry.dedupe_key not in sent:
                    sent.add(entry.dedupe_key)
                    yield _sse("log", entry.as_dict())

            final = log_broadcaster.completed_status(run_id)
            while final is None:
                try:
                    event, payload = events.get(timeout=SSE_PING_SECONDS)
                except queue.Empty:
                    yield ": ping\n\n"
                    current = _stored_status(run_id)
                    if current is None or current in TERMINAL_RUN_STATUSES:
                        final = current or "deleted"
                    continue
                if event == "complete":
                    final = payload.get("status")
                    break
                key = _log_key(payload)
                if key not in sent:
                    sent.add(key)
                    yield _sse("log", payload)

            while True:
                try:
                    event, payload = events.get_nowait()
                except queue.Empty:
                    break
                if event == "log" and _log_key(payload) not in sent:
                    sent.add(_log_key(payload))
                    yield _sse("log", payload)
            yield _sse("complete", {"run_id": run_id, "status": final})
        finally:
            unsubscribe()
            logger.debug("SSE client for run %s finished", run_id)

    return _event_stream(live())


def _event_stream(gen) -> Response:
    return Response(
        gen,
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )
