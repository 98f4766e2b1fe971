from __future__ import annotations

import pytest

from pytests.common import assert_envelope


def test_health_envelope(api):
    res = api.client.get("/health")
    assert res.status_code == 200
    payload = res.get_json()
    assert_envelope(payload)
    assert payload["data"] == {"status": "ok"}


@pytest.mark.parametrize(
    "method, path, expected_status",
    [
        ("get", "/api/v1/runs", 200),
        ("get", "/api/v1/runs/999", 404),
        ("get", "/api/v1/matching/supplier", 200),
        ("get", "/api/v1/matching/vendor", 400),
        ("get", "/api/v1/admin/jobs", 200),
        ("get", "/api/v1/does-not-exist", 404),
        ("post", "/api/v1/runs", 202),
        ("post", "/api/v1/assets/presign", 400),
    ],
)
def test_every_response_uses_the_envelope(api, method, path, expected_status):
    res = getattr(api.client, method)(path, json={} if method == "post" else None)
    assert res.status_code == expected_status
    assert res.mimetype == "application/json"
    assert_envelope(res.get_json())


def test_unknown_route_error_code(api):
    payload = api.client.get("/api/v1/does-not-exist").get_json()
    assert payload["error"]["code"] == "not_found"


def test_unhandled_exception_is_500_envelope(api, monkeypatch):
    from api.jobs import manager as jobs

    def broken():
        raise RuntimeError("wiring bug")

    monkeypatch.setattr(jobs, "get_background_reconciler", broken)
    res = api.client.get("/api/v1/admin/jobs")

    assert res.status_code == 500
    payload = res.get_json()
    assert_envelope(payload)
    assert payload["error"]["code"] == "internal_error"
    assert "wiring bug" not in payload["error"]["message"]


def test_request_id_is_generated_and_echoed(api):
    res = api.client.get("/health")
    rid = res.get_json()["meta"]["request_id"]
    assert rid
    assert res.headers["X-Request-ID"] == rid


def test_client_request_id_is_kept_when_well_formed(api):
    res = api.client.get("/api/v1/runs/999", headers={"X-Request-ID": "upload-42.retry_1"})
    assert res.get_json()["meta"]["request_id"] == "upload-42.retry_1"
    assert res.headers["X-Request-ID"] == "upload-42.retry_1"

    res = api.client.get("/health", headers={"X-Request-ID": "bad id with spaces"})
    assert res.get_json()["meta"]["request_id"] != "bad id with spaces"
