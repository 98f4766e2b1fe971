from __future__ import annotations

from pytests.common import assert_envelope


def test_api_v1_admin_jobs_envelope_and_payload(api):
    resp = api.client.get("/api/v1/admin/jobs")
    assert resp.status_code == 200

    body = resp.get_json()
    assert_envelope(body)

    data = body["data"]
    assert set(data.keys()) == {"pipeline_run_queue", "background_reconciler"}

    assert set(data["pipeline_run_queue"].keys()) >= {"running", "started_at", "ended_at", "error"}
    assert set(data["background_reconciler"].keys()) >= {
        "running",
        "started_at",
        "last_batch_at",
        "batches",
        "last_result",
        "error",
        "interval_seconds",
        "batch_size",
    }
    for state in data.values():
        assert isinstance(state["running"], bool)


def test_reconciler_run_batch(api):
    from pipeline.counterparty_store import ensure_counterparties

    session = api.app_db()
    try:
        ensure_counterparties(session, "supplier", ["12345"])
        session.commit()
    finally:
        session.close()

    resp = api.client.post("/api/v1/admin/reconciler/run-batch")

    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["ran"] is True
    assert data["result"]["pending"] == {"supplier": 1, "buyer": 0}
    assert data["result"]["kinds"]["supplier"]["no_match"] == 1
    assert data["state"]["batches"] == 1


def test_reconciler_start_stop(api):
    started = api.client.post("/api/v1/admin/reconciler/start").get_json()["data"]
    assert started["started"] is True
    assert started["state"]["running"] is True

    again = api.client.post("/api/v1/admin/reconciler/start").get_json()["data"]
    assert again["started"] is False

    stopped = api.client.post("/api/v1/admin/reconciler/stop").get_json()["data"]
    assert stopped["stopped"] is True
    assert stopped["state"]["running"] is False


def test_reconciler_unknown_action(api):
    resp = api.client.post("/api/v1/admin/reconciler/restart")
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "invalid_action"
