from __future__ import annotations

import threading
import time

import pytest

from jobs.background_reconciler import BackgroundReconciler
from models.counterparties import Supplier
from pipeline.counterparty_store import ensure_counterparties
from pipeline.errors import RegistryRequestError
from pipeline.match_engine import MatchBatchStats, MatchEngine
from pytests.common import FakeRegistryClient, candidate


class StubEngine:
    """Records calls; `pending` maps kind -> count, `processed` is what each batch consumes."""

    def __init__(self, pending=None, *, fail_with=None, gate=None):
        self.pending = dict(pending or {"supplier": 0, "buyer": 0})
        self.fail_with = fail_with
        self.gate = gate
        self.calls: list[tuple[str, int | None]] = []

    def count_pending(self, kind):
        return self.pending.get(kind, 0)

    def match_pending(self, kind, *, limit=None):
        self.calls.append((kind, limit))
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail_with is not None:
            raise self.fail_with
        n = min(self.pending.get(kind, 0), limit or 0)
        self.pending[kind] -= n
        return MatchBatchStats(processed=n, matched=n)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_run_batch_shares_budget_across_kinds():
    engine = StubEngine({"supplier": 3, "buyer": 10})
    r = BackgroundReconciler(engine, interval_seconds=60, batch_size=5, clock=lambda: 42.0)

    result = r.run_batch()

    assert engine.calls == [("supplier", 5), ("buyer", 2)]
    assert result["pending"] == {"supplier": 3, "buyer": 10}
    assert result["kinds"]["supplier"]["matched"] == 3
    assert result["kinds"]["buyer"]["processed"] == 2
    state = r.get_state()
    assert state["batches"] == 1
    assert state["last_batch_at"] == 42.0
    assert state["last_result"] == result
    assert state["error"] is None


def test_run_batch_skips_kinds_with_nothing_pending():
    engine = StubEngine({"supplier": 0, "buyer": 1})
    r = BackgroundReconciler(engine, interval_seconds=60, batch_size=5)

    assert r.run_batch()["kinds"].keys() == {"buyer"}
    assert engine.calls == [("buyer", 5)]


def test_run_batch_records_error_and_reraises():
    engine = StubEngine({"supplier": 1}, fail_with=RuntimeError("registry exploded"))
    r = BackgroundReconciler(engine, interval_seconds=60, batch_size=5, kinds=("supplier",))

    with pytest.raises(RuntimeError):
        r.run_batch()

    state = r.get_state()
    assert state["error"] == "RuntimeError: registry exploded"
    assert state["batches"] == 0

    engine.fail_with = None
    r.run_batch()
    assert r.get_state()["error"] is None


def test_concurrent_batch_returns_none():
    gate = threading.Event()
    engine = StubEngine({"supplier": 1}, gate=gate)
    r = BackgroundReconciler(engine, interval_seconds=60, batch_size=5, kinds=("supplier",))
    results = []

    t = threading.Thread(target=lambda: results.append(r.run_batch()))
    t.start()
    assert _wait_for(lambda: engine.calls)

    assert r.run_batch() is None
    gate.set()
    t.join(5)
    assert results[0]["kinds"]["supplier"]["processed"] == 1


def test_start_stop_lifecycle():
    engine = StubEngine({"supplier": 2})
    r = BackgroundReconciler(engine, interval_seconds=60, batch_size=5, kinds=("supplier",))

    assert r.stop() is False
    assert r.start() is True
    assert r.start() is False
    assert _wait_for(lambda: r.get_state()["batches"] == 1)
    assert r.get_state()["running"] is True

    assert r.stop() is True
    state = r.get_state()
    assert state["running"] is False
    assert state["stop_requested"] is True

    # Restartable after a stop.
    assert r.start() is True
    assert r.stop() is True


def test_loop_survives_failing_batches():
    engine = StubEngine({"supplier": 1}, fail_with=RuntimeError("flaky"))
    r = BackgroundReconciler(engine, interval_seconds=0.01, batch_size=5, kinds=("supplier",))

    r.start()
    try:
        assert _wait_for(lambda: len(engine.calls) >= 3)
        assert r.is_running()
        assert r.get_state()["error"] == "RuntimeError: flaky"
    finally:
        r.stop()


def test_failing_names_do_not_starve_the_queue(app_db):
    def search(name):
        if "Widget" in name:
            raise RegistryRequestError("ods returned HTTP 400")
        return [candidate("healthcare_provider", "RR8", "LEEDS TEACHING HOSPITALS NHS TRUST")]

    nhs = FakeRegistryClient("healthcare_provider", search_fn=search)
    engine = MatchEngine({"healthcare_provider": nhs}, session_factory=app_db)
    session = app_db()
    try:
        ids = ensure_counterparties(
            session,
            "supplier",
            ["Widget Supplies 1 Ltd", "Widget Supplies 2 Ltd", "Widget Supplies 3 Ltd"],
        )
        session.commit()
        ids.update(ensure_counterparties(session, "supplier", ["Leeds Teaching Hospitals NHS Trust"]))
        session.commit()
    finally:
        session.close()
    r = BackgroundReconciler(engine, interval_seconds=60, batch_size=3, kinds=("supplier",))

    first = r.run_batch()
    second = r.run_batch()

    assert first["kinds"]["supplier"]["errors"] == 3
    assert second["kinds"]["supplier"]["matched"] == 1
    assert nhs.calls[3] == "Leeds Teaching Hospitals NHS Trust"
    session = app_db()
    try:
        widgets = session.query(Supplier).filter(Supplier.name.like("Widget%")).all()
        assert {w.match_status for w in widgets} == {"pending"}
        assert all(w.match_attempted_at is not None for w in widgets)
        trust = session.get(Supplier, ids["Leeds Teaching Hospitals NHS Trust"])
        assert trust.match_status == "matched"
    finally:
        session.close()
