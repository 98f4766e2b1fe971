"""Shared helpers for tests.

Intended usage:
- spin up a temporary SQLite database with all tables
- point the app's `db.engine` / `db.SessionLocal` at it
- fake registries and HTTP sessions so no test touches the network

These utilities keep tests small and consistent.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Callable

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

import db
from models import Base
from models.assets import Asset
from models.spend_entries import SpendEntry
from pipeline.errors import RegistryUnavailable
from utils.registry_base import RegistryCandidate, RegistryClient

__all__ = [
    "make_sqlite_engine",
    "create_empty_sqlite_db",
    "patch_app_db",
    "add_dicts",
    "FakeResponse",
    "FakeHttpSession",
    "FakeRegistryClient",
    "FakeGeocoder",
    "candidate",
    "add_asset",
    "add_spend",
    "assert_envelope",
]


def make_sqlite_engine(db_path: Path | str) -> Engine:
    """Create a SQLite engine configured like the app's (pragmas included)."""

    if isinstance(db_path, Path):
        db_path = str(db_path)
    return db.make_engine(f"sqlite:///{db_path}")


def create_empty_sqlite_db(db_path: Path) -> tuple[Session, Engine]:
    """Create an empty SQLite DB file and initialize all models.

    Returns (session, engine).
    """

    engine = make_sqlite_engine(db_path)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False)
    return SessionLocal(), engine


def patch_app_db(monkeypatch, engine: Engine) -> sessionmaker:
    """Point `db.engine` / `db.SessionLocal` at `engine` for the test's duration."""

    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(db, "SessionLocal", factory)
    return factory


def add_dicts(session: Session, model, rows: Iterable[dict[str, Any]]) -> list[Any]:
    """Bulk insert a list of dicts into a SQLAlchemy model table."""

    objs = [model(**row) for row in rows]
    session.add_all(objs)
    session.commit()
    return objs


def add_asset(session: Session, name: str = "spend.csv", **kwargs: Any) -> Asset:
    asset = Asset(object_key=f"uploads/test/{uuid.uuid4().hex}-{name}", original_name=name, **kwargs)
    session.add(asset)
    session.commit()
    return asset


def add_spend(
    session: Session, asset_id: int, buyer_id: int, supplier_id: int, amount: Any, **kwargs: Any
) -> SpendEntry:
    """Insert one spend row; `row_hash` defaults to a random value."""

    kwargs.setdefault("row_hash", uuid.uuid4().hex)
    row = SpendEntry(asset_id=asset_id, buyer_id=buyer_id, supplier_id=supplier_id, amount=amount, **kwargs)
    session.add(row)
    session.commit()
    return row


def candidate(entity_type: str, registry_id: str, name: str, **kwargs: Any) -> RegistryCandidate:
    return RegistryCandidate(entity_type=entity_type, registry_id=registry_id, name=name, **kwargs)


class FakeResponse:
    def __init__(
        self, *, status_code: int = 200, content: bytes = b"{}", headers: dict | None = None
    ):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {"Content-Type": "application/json"}


class FakeHttpSession:
    """Stands in for `requests.Session`; replays queued responses or exceptions."""

    def __init__(self, responses):
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def request(self, method, url, params=None, json=None, headers=None, auth=None, timeout=None):
        self.calls.append(
            {"method": method, "url": url, "params": params, "json": json, "headers": headers or {}}
        )
        if not self._responses:
            raise RuntimeError("No more fake responses")
        r = self._responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r

    def get(self, url, timeout=None):
        return self.request("GET", url, timeout=timeout)


class FakeRegistryClient(RegistryClient):
    """In-memory registry: `entries` are searched by normalized substring.

    `fail_with` makes every search raise; `calls` records searched names.
    """

    display_name = "fake"

    def __init__(
        self,
        entity_type: str,
        entries: Iterable[RegistryCandidate] = (),
        *,
        fail_with: Exception | None = None,
        search_fn: Callable[[str], list[RegistryCandidate]] | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.entries = list(entries)
        self.fail_with = fail_with
        self.search_fn = search_fn
        self.calls: list[str] = []

    def search(self, name: str) -> list[RegistryCandidate]:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with
        if self.search_fn is not None:
            return self.search_fn(name)
        return list(self.entries)


class FakeGeocoder:
    def __init__(self, results: dict[str, dict[str, Any]] | None = None, *, unavailable: bool = False):
        self.results = results or {}
        self.unavailable = unavailable
        self.calls: list[list[str]] = []

    def bulk_lookup(self, postcodes):
        postcodes = list(postcodes)
        self.calls.append(postcodes)
        if self.unavailable:
            raise RegistryUnavailable("postcodes_io unavailable")
        return {p: self.results[p] for p in postcodes if p in self.results}


def assert_envelope(payload: Any) -> None:
    """Every API response is `{ok, data, error, meta}`; `error` is set iff not ok."""

    assert isinstance(payload, dict)
    assert set(payload.keys()) == {"ok", "data", "error", "meta"}
    assert isinstance(payload["ok"], bool)
    assert "request_id" in payload["meta"]
    if payload["ok"] is True:
        assert payload["error"] is None
    else:
        assert isinstance(payload["error"], dict)
        assert {"code", "message", "details"} <= set(payload["error"])
