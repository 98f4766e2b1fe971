from __future__ import annotations

from flask import Blueprint, jsonify, request

import db
from api.api_v1.common import int_arg, parse_body
from api.jobs import manager as jobs
from api.schemas.api_responses import fail, ok
from api.schemas.requests import LinkRequest, MergeRequest
from pipeline import ledger
from pipeline.counterparty_store import counterparty_model

matching_v1_bp = Blueprint("matching_v1", __name__)


@matching_v1_bp.route("/matching/search", methods=["GET"])
def search_registry():
    """Query one registry (or all, without `entity_type`) and return scored candidates."""

    q = (request.args.get("q") or "").strip()
    if not q:
        return jsonify(fail("q is required", code="invalid_request")), 400
    entity_type = (request.args.get("entity_type") or "").strip() or None

    candidates = jobs.get_match_engine().lookup(q, entity_type, strict=True)
    limit = max(1, min(int_arg("limit", 10) or 10, 50))
    return jsonify(ok([c.as_dict() for c in candidates[:limit]]))


@matching_v1_bp.route("/matching/<kind>", methods=["GET"])
def list_records(kind: str):
    """List suppliers or buyers.

    Query params: status (pending|matched|no_match), q (name substring),
    limit (max 100), offset.
    """

    counterparty_model(kind)
    session = db.SessionLocal()
    try:
        rows, total = ledger.list_counterparties(
            session,
            kind,
            status=(request.args.get("status") or "").strip() or None,
            q=(request.args.get("q") or "").strip() or None,
            limit=int_arg("limit", 50),
            offset=int_arg("offset", 0),
        )
        items = [ledger.serialize_counterparty(r) for r in rows]
    finally:
        session.close()
    return jsonify(ok({"items": items, "total": total}))


@matching_v1_bp.route("/matching/<kind>/<int:record_id>/link", methods=["POST"])
def link_record(kind: str, record_id: int):
    counterparty_model(kind)
    body = parse_body(LinkRequest)
    engine = jobs.get_match_engine()

    if body.no_match:
        outcome = engine.mark_no_match_manually(kind, record_id)
    else:
        candidate = engine.candidate_for(body.entity_type, body.registry_id, name=body.name)
        outcome = engine.link_manually(kind, record_id, candidate, confidence=body.confidence)
    return jsonify(ok(outcome.as_dict()))


@matching_v1_bp.route("/matching/<kind>/merge", methods=["POST"])
def merge_records(kind: str):
    counterparty_model(kind)
    body = parse_body(MergeRequest)
    moved = jobs.get_match_engine().merge_records(kind, body.source_id, body.target_id)
    return jsonify(
        ok({"source_id": body.source_id, "target_id": body.target_id, "spend_rows_moved": moved})
    )


@matching_v1_bp.route("/matching/<kind>/suggestions", methods=["GET"])
def merge_suggestions(kind: str):
    counterparty_model(kind)
    threshold = request.args.get("threshold", type=float) or 0.9
    pairs = jobs.get_match_engine().suggest_merges(
        kind, threshold=threshold, limit=max(1, min(int_arg("limit", 100) or 100, 500))
    )
    return jsonify(ok(pairs))
