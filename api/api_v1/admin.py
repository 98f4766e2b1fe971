from __future__ import annotations

from flask import Blueprint, jsonify

from api.jobs import manager as jobs
from api.schemas.api_responses import fail, ok

admin_v1_bp = Blueprint("admin_v1", __name__, url_prefix="/admin")


@admin_v1_bp.get("/jobs")
def get_jobs():
    """Return current background job state for the admin UI."""

    data = {
        "pipeline_run_queue": jobs.pipeline_run_queue.get_state(),
        "background_reconciler": jobs.get_background_reconciler().get_state(),
    }
    return jsonify(ok(data))


@admin_v1_bp.post("/reconciler/<action>")
def reconciler_action(action: str):
    """start | stop | run-batch"""

    reconciler = jobs.get_background_reconciler()
    if action == "start":
        data = {"started": reconciler.start()}
    elif action == "stop":
        data = {"stopped": reconciler.stop()}
    elif action == "run-batch":
        result = reconciler.run_batch()
        data = {"ran": result is not None, "result": result}
    else:
        return jsonify(fail(f"unknown reconciler action: {action}", code="invalid_action")), 400
    data["state"] = reconciler.get_state()
    return jsonify(ok(data))
