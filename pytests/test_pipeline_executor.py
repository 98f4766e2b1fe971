from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from models.entities import Entity
from models.pipeline_runs import PipelineRun
from pipeline import ledger
from pipeline.errors import StageFatal, ValidationError
from pipeline.executor import STAGE_IDS, StageExecutor, default_stages, select_stage_ids
from pipeline.log_broadcaster import LogBroadcaster
from pipeline.match_engine import MatchEngine, MatchThresholds
from pipeline.stage_types import Stage, StageResult
from pytests.common import FakeGeocoder, FakeRegistryClient, add_asset, candidate


class StubStage(Stage):
    def __init__(self, stage_id, *, on_run=None, result=None):
        self.stage_id = stage_id
        self.on_run = on_run
        self.result = result or StageResult(processed=1)
        self.calls = 0

    def run(self, ctx):
        self.calls += 1
        if self.on_run is not None:
            self.on_run(ctx)
        return self.result


def _stub_executor(app_db, broadcaster, **hooks):
    stages = [StubStage(sid, on_run=hooks.get(sid)) for sid in ("a", "b", "c")]
    return StageExecutor(stages, broadcaster=broadcaster, session_factory=app_db), stages


def _stages(app_db, run_id):
    session = app_db()
    try:
        return {s.stage_id: s for s in ledger.get_run_stages(session, run_id)}
    finally:
        session.close()


def _run(app_db, run_id):
    session = app_db()
    try:
        return ledger.get_run(session, run_id)
    finally:
        session.close()


def _log_messages(app_db, run_id):
    session = app_db()
    try:
        return [r.message for r in ledger.get_run_logs(session, run_id)]
    finally:
        session.close()


def test_select_stage_ids():
    assert select_stage_ids(STAGE_IDS, None, None) == list(STAGE_IDS)
    assert select_stage_ids(STAGE_IDS, "match_suppliers", "match_buyers") == [
        "match_suppliers",
        "match_buyers",
    ]
    assert select_stage_ids(STAGE_IDS, "enrich_locations", None) == ["enrich_locations"]


@pytest.mark.parametrize(
    "kwargs, code",
    [
        ({"from_stage": "nope"}, "invalid_from_stage"),
        ({"to_stage": "nope"}, "invalid_to_stage"),
        ({"from_stage": "c", "to_stage": "a"}, "invalid_stage_range"),
        ({"org_type": "charity"}, "invalid_org_type"),
    ],
)
def test_create_run_validates_before_writing(app_db, broadcaster, kwargs, code):
    executor, _stages_ = _stub_executor(app_db, broadcaster)

    with pytest.raises(ValidationError) as exc:
        executor.create_run(None, **kwargs)

    assert exc.value.code == code
    session = app_db()
    try:
        assert session.query(PipelineRun).count() == 0
    finally:
        session.close()


def test_create_run_rejects_unknown_asset(app_db, broadcaster):
    executor, _stages_ = _stub_executor(app_db, broadcaster)

    with pytest.raises(ValidationError) as exc:
        executor.create_run(999)
    assert exc.value.code == "asset_not_found"


def test_executor_rejects_duplicate_stage_ids(broadcaster):
    with pytest.raises(ValueError):
        StageExecutor([StubStage("a"), StubStage("a")], broadcaster=broadcaster)


def test_successful_run_walks_selected_stages(app_db, broadcaster):
    executor, stages = _stub_executor(app_db, broadcaster)
    run_id = executor.create_run(None, from_stage="b", params={"match_limit": 5}, created_by="ops")

    assert executor.execute(run_id) == "succeeded"

    assert [s.calls for s in stages] == [0, 1, 1]
    rows = _stages(app_db, run_id)
    assert set(rows) == {"b", "c"}
    assert all(r.status == "succeeded" and r.processed == 1 for r in rows.values())
    run = _run(app_db, run_id)
    assert run.status == "succeeded"
    assert run.started_at is not None and run.finished_at is not None
    assert run.params == {"match_limit": 5}
    assert broadcaster.completed_status(run_id) == "succeeded"

    messages = _log_messages(app_db, run_id)
    assert messages[0] == "Pipeline run started"
    assert messages.count("Stage started") == 2
    assert messages.count("Stage finished") == 2
    assert messages[-1] == "Pipeline run succeeded"


def test_execute_leaves_non_pending_runs_alone(app_db, broadcaster):
    executor, stages = _stub_executor(app_db, broadcaster)
    run_id = executor.create_run(None)
    executor.execute(run_id)

    assert executor.execute(run_id) == "succeeded"
    assert [s.calls for s in stages] == [1, 1, 1]


def test_stage_exception_fails_run_and_skips_rest(app_db, broadcaster):
    def boom(_ctx):
        raise RuntimeError("boom")

    executor, stages = _stub_executor(app_db, broadcaster, b=boom)
    run_id = executor.create_run(None)

    assert executor.execute(run_id) == "failed"

    rows = _stages(app_db, run_id)
    assert rows["a"].status == "succeeded"
    assert rows["b"].status == "failed"
    assert rows["b"].error == "RuntimeError: boom"
    assert rows["c"].status == "skipped"
    assert rows["c"].metrics == {"reason": "not_reached"}
    assert stages[2].calls == 0
    run = _run(app_db, run_id)
    assert (run.status, run.error) == ("failed", "RuntimeError: boom")
    assert "Stage error" in _log_messages(app_db, run_id)
    assert _log_messages(app_db, run_id)[-1] == "Pipeline run failed"
    assert broadcaster.completed_status(run_id) == "failed"


def test_unstorable_stage_result_fails_stage_and_run(app_db, broadcaster):
    executor, stages = _stub_executor(app_db, broadcaster)
    stages[0].result = StageResult(processed=1, metrics={"total": Decimal("1.50")})
    run_id = executor.create_run(None)

    assert executor.execute(run_id) == "failed"

    rows = _stages(app_db, run_id)
    assert rows["a"].status == "failed"
    assert "Decimal" in rows["a"].error
    assert rows["b"].status == "skipped"
    assert _run(app_db, run_id).status == "failed"
    assert broadcaster.completed_status(run_id) == "failed"

    session = app_db()
    try:
        assert ledger.delete_run(session, run_id) == 0
    finally:
        session.close()


def test_log_failure_outside_stage_still_finalizes_run(app_db):
    class BrokenFanOut(LogBroadcaster):
        def publish(self, run_id, entry):
            if entry.message == "Pipeline run succeeded":
                raise RuntimeError("fan-out broke")
            super().publish(run_id, entry)

    broadcaster = BrokenFanOut()
    executor, _ = _stub_executor(app_db, broadcaster)
    run_id = executor.create_run(None)

    with pytest.raises(RuntimeError, match="fan-out broke"):
        executor.execute(run_id)

    run = _run(app_db, run_id)
    assert (run.status, run.error) == ("failed", "RuntimeError: fan-out broke")
    assert {s.status for s in _stages(app_db, run_id).values()} == {"succeeded"}
    assert broadcaster.completed_status(run_id) == "failed"


def test_stage_fatal_records_error_code(app_db, broadcaster):
    def fatal(_ctx):
        raise StageFatal("store unreachable", code="store_unavailable")

    executor, _stages_ = _stub_executor(app_db, broadcaster, a=fatal)
    run_id = executor.create_run(None)

    assert executor.execute(run_id) == "failed"
    session = app_db()
    try:
        error_log = [r for r in ledger.get_run_logs(session, run_id) if r.message == "Stage error"][0]
    finally:
        session.close()
    assert error_log.meta["code"] == "store_unavailable"


def test_cancel_before_start_marks_everything_skipped(app_db, broadcaster):
    executor, stages = _stub_executor(app_db, broadcaster)
    run_id = executor.create_run(None)
    cancel = threading.Event()
    cancel.set()

    assert executor.execute(run_id, cancel) == "failed"

    assert [s.calls for s in stages] == [0, 0, 0]
    assert {r.status for r in _stages(app_db, run_id).values()} == {"skipped"}
    assert _run(app_db, run_id).error == "cancelled"


def test_cancel_during_stage(app_db, broadcaster):
    cancel = threading.Event()

    def cancel_midway(ctx):
        cancel.set()
        ctx.check_cancelled()

    executor, stages = _stub_executor(app_db, broadcaster, b=cancel_midway)
    run_id = executor.create_run(None)

    assert executor.execute(run_id, cancel) == "failed"

    rows = _stages(app_db, run_id)
    assert rows["a"].status == "succeeded"
    assert (rows["b"].status, rows["b"].error) == ("failed", "cancelled")
    assert rows["c"].status == "skipped"
    assert _run(app_db, run_id).error == "cancelled"
    assert "Stage cancelled" in _log_messages(app_db, run_id)


def test_live_subscriber_sees_logs_then_completion(app_db, broadcaster):
    executor, _stages_ = _stub_executor(app_db, broadcaster)
    run_id = executor.create_run(None)
    events = []
    unsubscribe = broadcaster.subscribe(run_id, lambda event, payload: events.append((event, payload)))

    executor.execute(run_id)
    unsubscribe()

    assert events[0][0] == "log"
    assert events[0][1]["message"] == "Pipeline run started"
    assert all("id" in payload for event, payload in events if event == "log")
    assert events[-1] == ("complete", {"run_id": run_id, "status": "succeeded"})


SPEND_CSV = (
    "Body,Date,Supplier,Amount\n"
    "Leeds City Council,2024-04-01,Acme Ltd,100.50\n"
    "Leeds City Council,2024-04-02,Beta Widgets Ltd,1200\n"
    "Leeds City Council,2024-04-03,Acme Ltd,not a number\n"
).encode("utf-8")


def test_full_pipeline_with_fake_registries(app_db, broadcaster):
    companies = FakeRegistryClient(
        "company",
        [
            candidate("company", "01234567", "ACME LIMITED", postal_code="LS1 1AA"),
            candidate("company", "07654321", "BETA WIDGETS LIMITED", postal_code="ZZ9 9ZZ"),
        ],
    )
    councils = FakeRegistryClient(
        "local_government",
        [candidate("local_government", "E08000035", "Leeds City Council", postal_code="ls1 1aa")],
    )
    engine = MatchEngine(
        {"company": companies, "local_government": councils},
        session_factory=app_db,
        thresholds=MatchThresholds(),
    )
    geocoder = FakeGeocoder(
        {"LS1 1AA": {"latitude": 53.8, "longitude": -1.55, "region": "Yorkshire", "country": "England"}}
    )
    executor = StageExecutor(
        default_stages(engine, fetch=lambda _key: SPEND_CSV, geocoder=geocoder),
        broadcaster=broadcaster,
        session_factory=app_db,
    )
    session = app_db()
    try:
        asset_id = add_asset(session, name="leeds.csv").id
    finally:
        session.close()

    run_id = executor.create_run(asset_id, org_type="council")
    assert executor.execute(run_id) == "succeeded"

    rows = _stages(app_db, run_id)
    assert [rows[sid].status for sid in STAGE_IDS] == ["succeeded"] * len(STAGE_IDS)
    assert (rows["import_spend"].processed, rows["import_spend"].skipped) == (2, 1)
    assert rows["match_suppliers"].matched == 2
    assert rows["match_buyers"].matched == 1
    assert rows["match_buyers"].metrics["matched"] == 1
    assert rows["enrich_locations"].matched == 2
    assert councils.calls == ["Leeds City Council"]

    session = app_db()
    try:
        by_registry = {e.registry_id: e for e in session.query(Entity)}
    finally:
        session.close()
    assert set(by_registry) == {"01234567", "07654321", "E08000035"}
    assert float(by_registry["01234567"].supplier_total_received) == pytest.approx(100.50)
    assert float(by_registry["07654321"].supplier_total_received) == pytest.approx(1200.00)
    assert float(by_registry["E08000035"].buyer_total_spend) == pytest.approx(1300.50)
    assert by_registry["01234567"].latitude == pytest.approx(53.8)
    assert by_registry["E08000035"].longitude == pytest.approx(-1.55)
    assert by_registry["07654321"].latitude is None
    assert geocoder.calls == [["LS1 1AA", "ZZ9 9ZZ"]]


def test_dry_run_pipeline_skips_write_only_stages(app_db, broadcaster, match_engine):
    geocoder = FakeGeocoder()
    executor = StageExecutor(
        default_stages(match_engine, fetch=lambda _key: SPEND_CSV, geocoder=geocoder),
        broadcaster=broadcaster,
        session_factory=app_db,
    )
    session = app_db()
    try:
        asset_id = add_asset(session).id
    finally:
        session.close()

    run_id = executor.create_run(asset_id, dry_run=True)
    assert executor.execute(run_id) == "succeeded"

    rows = _stages(app_db, run_id)
    assert rows["refresh_spend_totals"].status == "skipped"
    assert rows["refresh_spend_totals"].metrics == {"reason": "dry_run"}
    assert rows["enrich_locations"].status == "skipped"
    assert geocoder.calls == []
