from __future__ import annotations

import threading

from api.jobs.manager import PipelineRunQueue
from pipeline import ledger
from pipeline.executor import StageExecutor
from pipeline.stage_types import Stage, StageResult


class BlockingStage(Stage):
    stage_id = "block"

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def run(self, ctx):
        self.entered.set()
        self.release.wait(5)
        ctx.check_cancelled()
        return StageResult(processed=1)


def _status(app_db, run_id):
    session = app_db()
    try:
        run = ledger.get_run(session, run_id)
        return run.status, run.error
    finally:
        session.close()


def test_queue_executes_runs_in_order(app_db, broadcaster):
    stage = BlockingStage()
    stage.release.set()
    executor = StageExecutor([stage], broadcaster=broadcaster, session_factory=app_db)
    q = PipelineRunQueue(lambda: executor)

    first = executor.create_run(None)
    second = executor.create_run(None)
    q.enqueue(first)
    q.enqueue(second)
    q.join()

    assert _status(app_db, first) == ("succeeded", None)
    assert _status(app_db, second) == ("succeeded", None)
    state = q.get_state()
    assert state["running"] is False
    assert state["current_run_id"] is None
    assert state["queued"] == 0


def test_queue_cancels_running_run(app_db, broadcaster):
    stage = BlockingStage()
    executor = StageExecutor([stage], broadcaster=broadcaster, session_factory=app_db)
    q = PipelineRunQueue(lambda: executor)
    run_id = executor.create_run(None)

    assert q.request_cancel(run_id) is False
    q.enqueue(run_id)
    assert stage.entered.wait(5)
    assert q.get_state()["current_run_id"] == run_id

    assert q.request_cancel(run_id) is True
    stage.release.set()
    q.join()

    assert _status(app_db, run_id) == ("failed", "cancelled")
    assert q.request_cancel(run_id) is False


def test_queue_worker_survives_executor_crash(app_db, broadcaster):
    calls = []

    class Exploding:
        def execute(self, run_id, cancel_event):
            calls.append(run_id)
            raise RuntimeError("executor bug")

    q = PipelineRunQueue(lambda: Exploding())
    q.enqueue(1)
    q.enqueue(2)
    q.join()

    assert calls == [1, 2]
    assert "executor bug" in q.get_state()["error"]
