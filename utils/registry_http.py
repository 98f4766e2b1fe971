"""Shared HTTP plumbing for the external registry clients.

Every registry client owns one `MinIntervalRateLimiter` (process-wide, shared
by all threads calling that client) and one `RegistryHttpClient`. Requests are
retried on 429/5xx with exponential backoff or the server's `Retry-After`;
after the last attempt the call fails with `RegistryUnavailable`.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Callable

import requests

from logging_utils import get_logger
from pipeline.errors import RegistryRequestError, RegistryUnavailable
from settings import get_setting
from utils.time_utils import ensure_utc, utcnow

logger = get_logger(__name__)

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
MAX_RETRY_AFTER_SECONDS = 30.0


@dataclass(frozen=True)
class RegistryResponse:
    url: str
    status_code: int
    content: bytes
    content_type: str | None

    def json(self) -> Any:
        if not self.content:
            return None
        return json.loads(self.content.decode("utf-8"))


def _safe_preview_bytes(data: bytes | None, *, limit: int = 2000) -> str:
    """Log-safe preview of a response body."""

    if not data:
        return ""
    return data[:limit].decode("utf-8", errors="replace")


def _headers_for_log(headers: dict[str, str]) -> dict[str, str]:
    """Return a redacted copy of headers for logging."""

    redacted: dict[str, str] = {}
    for k, v in (headers or {}).items():
        lk = str(k).lower()
        if (
            lk in {"authorization", "x-api-key", "api-key"}
            or "token" in lk
            or "secret" in lk
        ):
            redacted[str(k)] = "<redacted>"
        else:
            redacted[str(k)] = str(v)
    return redacted


class MinIntervalRateLimiter:
    """Thread-safe limiter allowing one request per `interval_seconds`.

    Callers reserve the next free slot under the lock and then sleep outside it
    until that slot arrives, so concurrent callers queue in arrival order and
    never burst. `clock`/`sleep` are injectable for tests.
    """

    def __init__(
        self,
        interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")

        self._interval = float(interval_seconds)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_free: float | None = None

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def acquire(self) -> float:
        """Block until this caller's slot; returns the seconds waited."""

        with self._lock:
            now = self._clock()
            slot = now if self._next_free is None else max(now, self._next_free)
            self._next_free = slot + self._interval

        wait = slot - now
        if wait > 0:
            self._sleep(wait)
        return wait


def _parse_retry_after_seconds(value: str | None) -> float | None:
    """Parse `Retry-After` as integer seconds or an HTTP date."""

    if not value:
        return None
    v = value.strip()
    if not v:
        return None

    if v.isdigit():
        return float(int(v))

    try:
        when = parsedate_to_datetime(v)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    # "-0000" zones parse naive; those are UTC.
    return max((ensure_utc(when) - utcnow()).total_seconds(), 0.0)


def _backoff_seconds(
    attempt_index: int, *, base_seconds: float = 0.5, cap_seconds: float = 8.0
) -> float:
    # 0.5, 1, 2, 4 ... capped
    return min(base_seconds * (2**attempt_index), cap_seconds)


class RegistryHttpClient:
    """Rate-limited, retrying JSON-over-HTTPS client for one registry."""

    def __init__(
        self,
        *,
        name: str,
        rate_limiter: MinIntervalRateLimiter,
        session: requests.Session | None = None,
        auth: tuple[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.name = name
        self.rate_limiter = rate_limiter
        self._session = session or requests.Session()
        self._auth = auth
        self._headers = {
            "User-Agent": str(get_setting("REGISTRY_USER_AGENT", "spendmatch/0.1")),
            "Accept": "application/json",
        }
        if headers:
            self._headers.update(headers)
        self._timeout = float(timeout_seconds or get_setting("REGISTRY_TIMEOUT_SECONDS", 30.0))
        self._max_attempts = int(max_attempts or get_setting("REGISTRY_MAX_ATTEMPTS", 4))
        if self._max_attempts <= 0:
            raise ValueError("max_attempts must be >= 1")
        self._sleep = sleep

    def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        allow_404: bool = False,
    ) -> RegistryResponse | None:
        """Issue one logical request (possibly several attempts).

        Raises:
            RegistryUnavailable: retries exhausted on 429/5xx or connection errors.
            RegistryRequestError: non-retryable status.
        """

        for attempt in range(self._max_attempts):
            last_attempt = attempt >= self._max_attempts - 1
            self.rate_limiter.acquire()
            try:
                resp = self._session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=self._headers,
                    auth=self._auth,
                    timeout=self._timeout,
                )
            except requests.RequestException as e:
                logger.warning(
                    "%s request failed | url=%s attempt=%s/%s err=%s",
                    self.name,
                    url,
                    attempt + 1,
                    self._max_attempts,
                    e,
                )
                if last_attempt:
                    raise RegistryUnavailable(
                        f"{self.name} unreachable: {e}",
                        meta={"url": url, "attempts": attempt + 1},
                    ) from e
                self._sleep(_backoff_seconds(attempt))
                continue

            if 200 <= resp.status_code < 300:
                return RegistryResponse(
                    url=url,
                    status_code=resp.status_code,
                    content=resp.content,
                    content_type=resp.headers.get("Content-Type"),
                )

            if resp.status_code == 404 and allow_404:
                return None

            retry_after_raw = resp.headers.get("Retry-After")
            logger.warning(
                "%s non-2xx response | status=%s url=%s attempt=%s/%s retry_after=%s headers=%s body_preview=%s",
                self.name,
                resp.status_code,
                url,
                attempt + 1,
                self._max_attempts,
                retry_after_raw,
                _headers_for_log(self._headers),
                _safe_preview_bytes(resp.content, limit=500),
            )

            if resp.status_code not in RETRYABLE_STATUSES:
                raise RegistryRequestError(
                    f"{self.name} request failed status={resp.status_code}",
                    meta={"url": url, "status": resp.status_code},
                )

            if last_attempt:
                raise RegistryUnavailable(
                    f"{self.name} unavailable status={resp.status_code}",
                    meta={"url": url, "status": resp.status_code, "attempts": attempt + 1},
                )

            retry_after = _parse_retry_after_seconds(retry_after_raw)
            if retry_after is not None:
                self._sleep(min(retry_after, MAX_RETRY_AFTER_SECONDS))
            else:
                self._sleep(_backoff_seconds(attempt))

        # Loop always returns or raises.
        raise RegistryUnavailable(f"{self.name} request failed", meta={"url": url})

    def get_json(self, url: str, *, params: dict[str, Any] | None = None, allow_404: bool = False) -> Any:
        resp = self.request("GET", url, params=params, allow_404=allow_404)
        return None if resp is None else resp.json()

    def post_json(self, url: str, body: Any) -> Any:
        resp = self.request("POST", url, json_body=body)
        return None if resp is None else resp.json()
