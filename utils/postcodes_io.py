"""postcodes.io bulk geocoder.

Endpoint:
  POST {base}/postcodes  {"postcodes": [...]}   (max 100 per request)
"""

from __future__ import annotations

import re
from typing import Any, Iterable

from settings import get_setting
from utils.registry_http import MinIntervalRateLimiter, RegistryHttpClient

BULK_LIMIT = 100


def normalize_uk_postcode(value: str) -> str:
    return re.sub(r"\s+", " ", (value or "").upper()).strip()


class PostcodesIoClient:
    """Geocoder; not a registry (it has no search), so it only shares the HTTP layer."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        http: RegistryHttpClient | None = None,
        rate_limit_seconds: float | None = None,
        **http_kwargs: Any,
    ) -> None:
        self.base_url = str(base_url or get_setting("POSTCODES_IO_BASE_URL")).rstrip("/")
        if rate_limit_seconds is None:
            rate_limit_seconds = float(get_setting("POSTCODES_IO_RATE_LIMIT_SECONDS", 0.3))
        self.http = http or RegistryHttpClient(
            name="postcodes_io",
            rate_limiter=MinIntervalRateLimiter(rate_limit_seconds),
            **http_kwargs,
        )

    def bulk_lookup(self, postcodes: Iterable[str]) -> dict[str, dict[str, Any]]:
        """Geocode up to 100 postcodes in one request.

        Returns ``{normalized_postcode: {latitude, longitude, region, country}}``
        for postcodes that resolved; unknown postcodes are omitted.
        """

        unique: list[str] = []
        for p in postcodes:
            n = normalize_uk_postcode(p)
            if n and n not in unique:
                unique.append(n)
        if len(unique) > BULK_LIMIT:
            raise ValueError(f"postcodes.io bulk lookup accepts at most {BULK_LIMIT} postcodes")
        if not unique:
            return {}

        data = self.http.post_json(f"{self.base_url}/postcodes", {"postcodes": unique})

        out: dict[str, dict[str, Any]] = {}
        for item in (data or {}).get("result") or []:
            result = item.get("result")
            if not result:
                continue
            key = normalize_uk_postcode(item.get("query") or result.get("postcode") or "")
            out[key] = {
                "latitude": result.get("latitude"),
                "longitude": result.get("longitude"),
                "region": result.get("region"),
                "country": result.get("country"),
            }
        return out
