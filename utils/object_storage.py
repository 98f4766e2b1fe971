"""S3-compatible object storage access through SigV4 presigned URLs.

Only the ``host`` header is signed and the payload is ``UNSIGNED-PAYLOAD``, so a
URL can be handed to a browser for upload or used server-side for download.
URLs are path-style: ``{endpoint}/{bucket}/{key}``.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import quote, urlsplit

import requests

from logging_utils import get_logger
from settings import get_setting
from utils.time_utils import ensure_utc, utcnow

logger = get_logger(__name__)

_ALGORITHM = "AWS4-HMAC-SHA256"
_SERVICE = "s3"


class ObjectStorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class ObjectStorageConfig:
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    @classmethod
    def from_settings(cls) -> "ObjectStorageConfig":
        region = str(get_setting("OBJECT_STORAGE_REGION", "us-east-1"))
        endpoint = get_setting("OBJECT_STORAGE_ENDPOINT") or (
            "https://s3.amazonaws.com"
            if region == "us-east-1"
            else f"https://s3.{region}.amazonaws.com"
        )
        bucket = get_setting("OBJECT_STORAGE_BUCKET")
        key_id = get_setting("OBJECT_STORAGE_ACCESS_KEY_ID")
        secret = get_setting("OBJECT_STORAGE_SECRET_ACCESS_KEY")
        if not bucket:
            raise ObjectStorageError("Missing OBJECT_STORAGE_BUCKET (or S3_BUCKET)")
        if not key_id:
            raise ObjectStorageError("Missing OBJECT_STORAGE_ACCESS_KEY_ID (or AWS_ACCESS_KEY_ID)")
        if not secret:
            raise ObjectStorageError(
                "Missing OBJECT_STORAGE_SECRET_ACCESS_KEY (or AWS_SECRET_ACCESS_KEY)"
            )
        return cls(
            endpoint=str(endpoint),
            region=region,
            bucket=str(bucket),
            access_key_id=str(key_id),
            secret_access_key=str(secret),
        )


def _hmac(key: bytes, data: str) -> bytes:
    return hmac.new(key, data.encode("utf-8"), hashlib.sha256).digest()


def _encode(value: str) -> str:
    # RFC 3986 unreserved characters only.
    return quote(value, safe="-_.~")


def presign_url(
    method: str,
    object_key: str,
    expires_seconds: int,
    *,
    config: ObjectStorageConfig | None = None,
    now: datetime | None = None,
) -> str:
    """Return a presigned URL for `method` (GET or PUT) on `object_key`."""

    method = method.upper()
    if method not in {"GET", "PUT", "HEAD"}:
        raise ValueError(f"unsupported presign method: {method}")

    cfg = config or ObjectStorageConfig.from_settings()
    ts = ensure_utc(now or utcnow())
    amz_date = ts.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = ts.strftime("%Y%m%d")

    base = cfg.endpoint.rstrip("/")
    canonical_uri = "/" + "/".join(_encode(s) for s in [cfg.bucket, *object_key.split("/")])
    host = urlsplit(base).netloc

    scope = f"{date_stamp}/{cfg.region}/{_SERVICE}/aws4_request"
    query = {
        "X-Amz-Algorithm": _ALGORITHM,
        "X-Amz-Credential": f"{cfg.access_key_id}/{scope}",
        "X-Amz-Date": amz_date,
        "X-Amz-Expires": str(int(expires_seconds)),
        "X-Amz-SignedHeaders": "host",
    }
    canonical_query = "&".join(f"{_encode(k)}={_encode(query[k])}" for k in sorted(query))

    canonical_request = "\n".join(
        [method, canonical_uri, canonical_query, f"host:{host}\n", "host", "UNSIGNED-PAYLOAD"]
    )
    string_to_sign = "\n".join(
        [
            _ALGORITHM,
            amz_date,
            scope,
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ]
    )

    k_date = _hmac(("AWS4" + cfg.secret_access_key).encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, cfg.region)
    k_service = _hmac(k_region, _SERVICE)
    k_signing = _hmac(k_service, "aws4_request")
    signature = hmac.new(k_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    return f"{base}{canonical_uri}?{canonical_query}&X-Amz-Signature={signature}"


def safe_file_name(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", (name or "").strip()).strip("._")
    return cleaned[:120] or "upload"


def build_object_key(original_name: str, *, now: datetime | None = None) -> str:
    """``uploads/YYYY-MM-DD/<uuid>-<safe name>``"""

    day = ensure_utc(now or utcnow()).strftime("%Y-%m-%d")
    return f"uploads/{day}/{uuid.uuid4()}-{safe_file_name(original_name)}"


def download_object(
    object_key: str,
    *,
    session: requests.Session | None = None,
    timeout_seconds: float = 120.0,
) -> bytes:
    """Fetch an object's bytes through a short-lived presigned GET URL."""

    url = presign_url(
        "GET", object_key, int(get_setting("DOWNLOAD_URL_EXPIRES_SECONDS", 60))
    )
    s = session or requests.Session()
    resp = s.get(url, timeout=timeout_seconds)
    if resp.status_code != 200:
        logger.warning("Object download failed | key=%s status=%s", object_key, resp.status_code)
        raise ObjectStorageError(f"download failed status={resp.status_code} key={object_key}")
    return resp.content
