from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import parse_qs, urlsplit

import pytest

import settings
from pytests.common import FakeHttpSession, FakeResponse
from utils.object_storage import (
    ObjectStorageConfig,
    ObjectStorageError,
    build_object_key,
    download_object,
    presign_url,
    safe_file_name,
)

_CFG = ObjectStorageConfig(
    endpoint="https://storage.example.test/",
    region="eu-west-2",
    bucket="spend-files",
    access_key_id="AKIDEXAMPLE",
    secret_access_key="secret",
)
_NOW = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def test_presign_url_is_path_style_and_deterministic():
    url = presign_url("put", "uploads/2025-01-02/a b.csv", 900, config=_CFG, now=_NOW)
    again = presign_url("PUT", "uploads/2025-01-02/a b.csv", 900, config=_CFG, now=_NOW)
    assert url == again

    parts = urlsplit(url)
    assert parts.netloc == "storage.example.test"
    assert parts.path == "/spend-files/uploads/2025-01-02/a%20b.csv"

    q = parse_qs(parts.query)
    assert q["X-Amz-Algorithm"] == ["AWS4-HMAC-SHA256"]
    assert q["X-Amz-Credential"] == ["AKIDEXAMPLE/20250102/eu-west-2/s3/aws4_request"]
    assert q["X-Amz-Date"] == ["20250102T030405Z"]
    assert q["X-Amz-Expires"] == ["900"]
    assert q["X-Amz-SignedHeaders"] == ["host"]
    assert len(q["X-Amz-Signature"][0]) == 64


def test_presign_signature_depends_on_method_and_key():
    put = presign_url("PUT", "k.csv", 60, config=_CFG, now=_NOW)
    get = presign_url("GET", "k.csv", 60, config=_CFG, now=_NOW)
    other = presign_url("GET", "other.csv", 60, config=_CFG, now=_NOW)

    sigs = {parse_qs(urlsplit(u).query)["X-Amz-Signature"][0] for u in (put, get, other)}
    assert len(sigs) == 3


def test_presign_rejects_unsupported_method():
    with pytest.raises(ValueError):
        presign_url("DELETE", "k", 60, config=_CFG, now=_NOW)


def test_config_requires_bucket_and_credentials(monkeypatch):
    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_BUCKET", None)
    with pytest.raises(ObjectStorageError, match="OBJECT_STORAGE_BUCKET"):
        ObjectStorageConfig.from_settings()

    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_BUCKET", "b")
    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_ACCESS_KEY_ID", None)
    with pytest.raises(ObjectStorageError, match="ACCESS_KEY_ID"):
        ObjectStorageConfig.from_settings()


def test_config_defaults_endpoint_from_region(monkeypatch):
    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_BUCKET", "b")
    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_ACCESS_KEY_ID", "id")
    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_SECRET_ACCESS_KEY", "s")
    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_ENDPOINT", None)

    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_REGION", "us-east-1")
    assert ObjectStorageConfig.from_settings().endpoint == "https://s3.amazonaws.com"

    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_REGION", "eu-west-2")
    assert ObjectStorageConfig.from_settings().endpoint == "https://s3.eu-west-2.amazonaws.com"


def test_build_object_key_and_safe_file_name():
    key = build_object_key("../Spend April 2024 (final).xlsx", now=_NOW)
    assert key.startswith("uploads/2025-01-02/")
    assert key.endswith("-Spend_April_2024_final_.xlsx")
    assert build_object_key("x.csv", now=_NOW) != build_object_key("x.csv", now=_NOW)

    assert safe_file_name("") == "upload"
    assert safe_file_name("...") == "upload"


def _configure_storage(monkeypatch):
    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_ENDPOINT", "https://storage.example.test")
    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_BUCKET", "spend-files")
    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_ACCESS_KEY_ID", "id")
    monkeypatch.setitem(settings.SETTINGS, "OBJECT_STORAGE_SECRET_ACCESS_KEY", "s")


def test_download_object_returns_bytes(monkeypatch):
    _configure_storage(monkeypatch)
    s = FakeHttpSession([FakeResponse(status_code=200, content=b"a,b\n")])

    assert download_object("uploads/x.csv", session=s) == b"a,b\n"
    assert s.calls[0]["url"].startswith("https://storage.example.test/spend-files/uploads/x.csv?")


def test_download_object_non_200_raises(monkeypatch):
    _configure_storage(monkeypatch)
    s = FakeHttpSession([FakeResponse(status_code=403, content=b"denied")])

    with pytest.raises(ObjectStorageError, match="status=403"):
        download_object("uploads/x.csv", session=s)
