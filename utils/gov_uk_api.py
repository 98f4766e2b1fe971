"""GOV.UK organisation search client (national government directory).

Endpoint:
  GET https://www.gov.uk/api/search.json?filter_format=organisation&q=...

The registry id of a national government entity is the GOV.UK organisation
slug, e.g. ``department-for-education``.
"""

from __future__ import annotations

from typing import Any

from settings import get_setting
from utils.registry_base import RegistryCandidate, RegistryClient

ORGANISATION_LINK_PREFIX = "/government/organisations/"
SEARCH_FIELDS = "title,link,slug,acronym,organisation_type,organisation_state,content_id"

# Bodies that show up in organisation searches but are never the national
# department a spend file means.
_EXCLUDED_TITLE_WORDS = ("national park", "police", "fire")


def slug_from_link(link: str | None) -> str | None:
    if not link or not link.startswith(ORGANISATION_LINK_PREFIX):
        return None
    slug = link[len(ORGANISATION_LINK_PREFIX):].strip("/")
    return slug or None


def parse_search_results(data: dict[str, Any] | None) -> list[dict[str, Any]]:
    """Flatten a search.json payload into organisation dicts with a `slug`."""

    orgs: list[dict[str, Any]] = []
    for result in (data or {}).get("results") or []:
        nested = result.get("organisations") or []
        org = dict(nested[0]) if nested and isinstance(nested[0], dict) else {}
        for key in ("title", "link", "acronym", "organisation_type", "organisation_state", "content_id"):
            if not org.get(key) and result.get(key):
                org[key] = result[key]
        slug = org.get("slug") or result.get("slug") or slug_from_link(org.get("link"))
        if not slug or not org.get("title"):
            continue
        org["slug"] = slug
        orgs.append(org)
    return orgs


def search_organisations(client: RegistryClient, search_url: str, query: str) -> list[dict[str, Any]]:
    data = client.http.get_json(
        search_url,
        params={"filter_format": "organisation", "q": query, "fields": SEARCH_FIELDS},
    )
    return parse_search_results(data)


def is_local_authority(org: dict[str, Any]) -> bool:
    org_type = (org.get("organisation_type") or "").lower()
    title = (org.get("title") or "").lower()
    return org_type == "local_authority" or "council" in title


class GovUkClient(RegistryClient):
    entity_type = "national_government"
    display_name = "gov_uk"

    def __init__(
        self,
        *,
        search_url: str | None = None,
        rate_limit_seconds: float | None = None,
        **kwargs: Any,
    ) -> None:
        self.search_url = str(search_url or get_setting("GOV_UK_SEARCH_URL"))
        super().__init__(
            rate_limit_seconds=(
                rate_limit_seconds
                if rate_limit_seconds is not None
                else float(get_setting("GOV_UK_RATE_LIMIT_SECONDS", 1.0))
            ),
            **kwargs,
        )

    def search(self, name: str) -> list[RegistryCandidate]:
        out: list[RegistryCandidate] = []
        for org in search_organisations(self, self.search_url, name):
            title = str(org["title"])
            if is_local_authority(org) or any(w in title.lower() for w in _EXCLUDED_TITLE_WORDS):
                continue
            out.append(
                RegistryCandidate(
                    entity_type=self.entity_type,
                    registry_id=str(org["slug"]),
                    name=title,
                    status=org.get("organisation_state"),
                    country="United Kingdom",
                    details={
                        "slug": org["slug"],
                        "acronym": org.get("acronym"),
                        "organisation_type": org.get("organisation_type"),
                        "organisation_state": org.get("organisation_state"),
                        "link": org.get("link"),
                    },
                    raw=org,
                )
            )
        return out
