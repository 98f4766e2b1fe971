from __future__ import annotations

import pytest

from pipeline.counterparty_store import ensure_counterparties
from pipeline.errors import RegistryUnavailable
from pytests.common import assert_envelope, candidate


def _suppliers(api, *names):
    session = api.app_db()
    try:
        ids = ensure_counterparties(session, "supplier", names)
        session.commit()
        return ids
    finally:
        session.close()


def test_list_suppliers_with_filters(api):
    ids = _suppliers(api, "Acme Ltd", "Beta Widgets Ltd", "12345")
    api.engine.match_record("supplier", ids["12345"])

    res = api.client.get("/api/v1/matching/supplier")
    assert res.status_code == 200
    payload = res.get_json()
    assert_envelope(payload)
    assert payload["data"]["total"] == 3
    assert [r["name"] for r in payload["data"]["items"]] == ["12345", "Acme Ltd", "Beta Widgets Ltd"]

    pending = api.client.get("/api/v1/matching/supplier?status=pending").get_json()["data"]
    assert pending["total"] == 2

    rejected = api.client.get("/api/v1/matching/supplier?status=no_match").get_json()["data"]["items"]
    assert rejected[0]["match_note"] == "purely_numeric"

    found = api.client.get("/api/v1/matching/supplier?q=acme").get_json()["data"]
    assert [r["id"] for r in found["items"]] == [ids["Acme Ltd"]]

    page = api.client.get("/api/v1/matching/supplier?limit=1&offset=1").get_json()["data"]
    assert [r["name"] for r in page["items"]] == ["Acme Ltd"]
    assert page["total"] == 3


def test_invalid_kind(api):
    for res in (
        api.client.get("/api/v1/matching/vendor"),
        api.client.post("/api/v1/matching/vendor/1/link", json={"no_match": True}),
        api.client.post("/api/v1/matching/vendor/merge", json={"source_id": 1, "target_id": 2}),
        api.client.get("/api/v1/matching/vendor/suggestions"),
    ):
        assert res.status_code == 400
        assert res.get_json()["error"]["code"] == "invalid_kind"


def test_manual_link(api):
    ids = _suppliers(api, "Acme Trading")

    res = api.client.post(
        f"/api/v1/matching/supplier/{ids['Acme Trading']}/link",
        json={"entity_type": "company", "registry_id": "01234567", "name": "ACME LIMITED", "confidence": 1.0},
    )

    assert res.status_code == 200
    outcome = res.get_json()["data"]
    assert outcome["status"] == "matched"
    assert outcome["confidence"] == 1.0
    record = api.client.get("/api/v1/matching/supplier?status=matched").get_json()["data"]["items"][0]
    assert record["manually_verified"] is True
    assert record["entity_id"] == outcome["entity_id"]


def test_manual_no_match(api):
    ids = _suppliers(api, "Petty cash")

    res = api.client.post(f"/api/v1/matching/supplier/{ids['Petty cash']}/link", json={"no_match": True})

    assert res.status_code == 200
    assert res.get_json()["data"]["reason"] == "manual"
    assert api.client.post("/api/v1/matching/supplier/999/link", json={"no_match": True}).status_code == 404


@pytest.mark.parametrize(
    "body, code",
    [
        ({}, "invalid_request"),
        ({"entity_type": "company"}, "invalid_request"),
        ({"entity_type": "charity", "registry_id": "1"}, "invalid_request"),
        ({"entity_type": "company", "registry_id": "01234567"}, "name_required"),
    ],
)
def test_manual_link_rejects_bad_input(api, body, code):
    ids = _suppliers(api, "Acme Trading")

    res = api.client.post(f"/api/v1/matching/supplier/{ids['Acme Trading']}/link", json=body)

    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == code


def test_merge_and_suggestions(api):
    ids = _suppliers(api, "Acme Ltd", "ACME LIMITED", "Zeta Widgets Ltd")

    suggestions = api.client.get("/api/v1/matching/supplier/suggestions").get_json()["data"]
    assert len(suggestions) == 1
    pair = suggestions[0]

    res = api.client.post(
        "/api/v1/matching/supplier/merge",
        json={"source_id": pair["source_id"], "target_id": pair["target_id"]},
    )
    assert res.status_code == 200
    assert res.get_json()["data"]["spend_rows_moved"] == 0
    assert api.client.get("/api/v1/matching/supplier").get_json()["data"]["total"] == 2

    same = api.client.post(
        "/api/v1/matching/supplier/merge",
        json={"source_id": ids["Zeta Widgets Ltd"], "target_id": ids["Zeta Widgets Ltd"]},
    )
    assert same.status_code == 400

    gone = api.client.post(
        "/api/v1/matching/supplier/merge",
        json={"source_id": pair["source_id"], "target_id": ids["Zeta Widgets Ltd"]},
    )
    assert gone.status_code == 404


def test_registry_search(api):
    api.registry.entries = [
        candidate("company", "01234567", "ACME LIMITED"),
        candidate("company", "07654321", "ZENITH HOLDINGS LTD"),
    ]

    res = api.client.get("/api/v1/matching/search?q=Acme%20Ltd&entity_type=company&limit=1")

    assert res.status_code == 200
    hits = res.get_json()["data"]
    assert len(hits) == 1
    assert hits[0]["registry_id"] == "01234567"
    assert hits[0]["score"] == 1.0


def test_registry_search_errors(api):
    assert api.client.get("/api/v1/matching/search").status_code == 400

    res = api.client.get("/api/v1/matching/search?q=Leeds&entity_type=local_government")
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "registry_not_configured"

    api.registry.fail_with = RegistryUnavailable("companies_house unavailable after retries")
    res = api.client.get("/api/v1/matching/search?q=Acme&entity_type=company")
    assert res.status_code == 503
    assert res.get_json()["error"]["code"] == "registry_unavailable"
