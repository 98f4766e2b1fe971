from __future__ import annotations

from dataclasses import dataclass

import pytest
from flask.testing import FlaskClient
from sqlalchemy.orm import sessionmaker

from jobs.background_reconciler import BackgroundReconciler
from pipeline.executor import StageExecutor, default_stages
from pipeline.log_broadcaster import LogBroadcaster
from pipeline.match_engine import MatchEngine, MatchThresholds
from pytests.common import (
    FakeGeocoder,
    FakeRegistryClient,
    create_empty_sqlite_db,
    patch_app_db,
)


@pytest.fixture()
def app_db(tmp_path, monkeypatch):
    """Fresh SQLite database wired into `db.SessionLocal`.

    Yields the session factory; the engine is disposed afterwards.
    """

    session, engine = create_empty_sqlite_db(tmp_path / "test.sqlite")
    session.close()
    factory = patch_app_db(monkeypatch, engine)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture()
def session(app_db):
    s = app_db()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def broadcaster():
    return LogBroadcaster()


@pytest.fixture()
def company_registry():
    return FakeRegistryClient("company")


@pytest.fixture()
def match_engine(app_db, company_registry):
    return MatchEngine(
        {"company": company_registry},
        session_factory=app_db,
        thresholds=MatchThresholds(auto_apply=0.9, minimum=0.5, ambiguity_margin=0.02),
    )


class FakeRunQueue:
    """Stands in for `PipelineRunQueue`: records enqueued ids, executes nothing."""

    def __init__(self) -> None:
        self.enqueued: list[int] = []
        self.cancellable: set[int] = set()

    def enqueue(self, run_id: int) -> None:
        self.enqueued.append(run_id)

    def request_cancel(self, run_id: int) -> bool:
        return run_id in self.cancellable

    def get_state(self) -> dict:
        return {
            "running": False,
            "started_at": None,
            "ended_at": None,
            "error": None,
            "current_run_id": None,
            "queued": len(self.enqueued),
        }


@dataclass
class ApiEnv:
    client: FlaskClient
    app_db: sessionmaker
    broadcaster: LogBroadcaster
    executor: StageExecutor
    engine: MatchEngine
    registry: FakeRegistryClient
    run_queue: FakeRunQueue
    reconciler: BackgroundReconciler


@pytest.fixture()
def api(tmp_path, monkeypatch, app_db, broadcaster, match_engine, company_registry):
    """Flask test client wired to the temp DB, fake registries and a fake run queue."""

    monkeypatch.setenv("SPENDMATCH_LOG_DIR", str(tmp_path / "logs"))

    from api.api_v1 import runs as runs_routes
    from api.jobs import manager as jobs
    from app import create_app

    executor = StageExecutor(
        default_stages(match_engine, fetch=lambda _key: b"", geocoder=FakeGeocoder()),
        broadcaster=broadcaster,
        session_factory=app_db,
    )
    run_queue = FakeRunQueue()
    reconciler = BackgroundReconciler(match_engine, interval_seconds=60, batch_size=10)

    monkeypatch.setattr(jobs, "get_match_engine", lambda: match_engine)
    monkeypatch.setattr(jobs, "get_stage_executor", lambda: executor)
    monkeypatch.setattr(jobs, "get_background_reconciler", lambda: reconciler)
    monkeypatch.setattr(jobs, "pipeline_run_queue", run_queue)
    monkeypatch.setattr(runs_routes, "log_broadcaster", broadcaster)

    app = create_app()
    app.config.update(TESTING=True)
    try:
        with app.test_client() as c:
            yield ApiEnv(
                client=c,
                app_db=app_db,
                broadcaster=broadcaster,
                executor=executor,
                engine=match_engine,
                registry=company_registry,
                run_queue=run_queue,
                reconciler=reconciler,
            )
    finally:
        reconciler.stop()

