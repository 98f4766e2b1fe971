"""Local government directory client.

Two sources, in order of preference:
- an ONS local authority district CSV (``LAD23NM``, ``LAD23CD``, optional
  ``LAT``/``LONG``) when ``LOCAL_GOV_DIRECTORY_CSV`` is configured; the GSS code
  becomes the registry id
- GOV.UK organisation search filtered to local authorities; the organisation
  slug becomes the registry id
"""

from __future__ import annotations

import csv
import threading
from pathlib import Path
from typing import Any

from logging_utils import get_logger
from settings import get_setting
from utils.gov_uk_api import is_local_authority, search_organisations
from utils.name_matching import name_similarity
from utils.registry_base import RegistryCandidate, RegistryClient

logger = get_logger(__name__)

# CSV rows scoring at or below this are not worth returning as candidates.
CSV_MIN_SIMILARITY = 0.7
CSV_MAX_CANDIDATES = 5

_EXCLUDED_TITLE_WORDS = ("national park", "police", "fire", "committee", "commission")


def infer_council_type(name: str) -> str:
    n = (name or "").lower()
    if "city of" in n or "city council" in n:
        return "city"
    if "london borough" in n:
        return "london_borough"
    if "metropolitan borough" in n:
        return "metropolitan"
    if "district council" in n:
        return "district"
    if "county council" in n:
        return "county"
    return "unitary"


def infer_tier(council_type: str) -> str:
    if "county" in council_type:
        return "tier1"
    if "district" in council_type:
        return "tier2"
    return "unitary"


def infer_nation(gss_code: str | None) -> str:
    prefix = (gss_code or "E")[:1].upper()
    return {
        "E": "England",
        "W": "Wales",
        "S": "Scotland",
        "N": "Northern Ireland",
    }.get(prefix, "England")


class CouncilDirectoryClient(RegistryClient):
    entity_type = "local_government"
    display_name = "council_directory"

    def __init__(
        self,
        *,
        directory_csv: str | Path | None = None,
        search_url: str | None = None,
        rate_limit_seconds: float | None = None,
        **kwargs: Any,
    ) -> None:
        csv_path = directory_csv or get_setting("LOCAL_GOV_DIRECTORY_CSV")
        self.directory_csv = Path(csv_path) if csv_path else None
        self.search_url = str(search_url or get_setting("GOV_UK_SEARCH_URL"))
        self._rows: list[dict[str, str]] | None = None
        self._rows_lock = threading.Lock()
        super().__init__(
            rate_limit_seconds=(
                rate_limit_seconds
                if rate_limit_seconds is not None
                else float(get_setting("GOV_UK_RATE_LIMIT_SECONDS", 1.0))
            ),
            **kwargs,
        )

    def _directory_rows(self) -> list[dict[str, str]]:
        with self._rows_lock:
            if self._rows is None:
                with open(self.directory_csv, newline="", encoding="utf-8-sig") as fh:
                    self._rows = [r for r in csv.DictReader(fh) if r.get("LAD23NM")]
                logger.info(
                    "Loaded %s local authority districts from %s",
                    len(self._rows),
                    self.directory_csv,
                )
            return self._rows

    def _search_directory(self, name: str) -> list[RegistryCandidate]:
        hits: list[RegistryCandidate] = []
        for row in self._directory_rows():
            official = row["LAD23NM"].strip()
            if name_similarity(name, official, self.entity_type) <= CSV_MIN_SIMILARITY:
                continue
            gss = (row.get("LAD23CD") or "").strip().upper()
            if not gss:
                continue
            council_type = infer_council_type(name)
            hits.append(
                RegistryCandidate(
                    entity_type=self.entity_type,
                    registry_id=gss,
                    name=official,
                    country=infer_nation(gss),
                    details={
                        "gss_code": gss,
                        "council_type": council_type,
                        "tier": infer_tier(council_type),
                        "nation": infer_nation(gss),
                    },
                    raw=dict(row),
                )
            )
        hits = self.rank(name, hits)
        return hits[:CSV_MAX_CANDIDATES]

    def _search_gov_uk(self, name: str) -> list[RegistryCandidate]:
        out: list[RegistryCandidate] = []
        for org in search_organisations(self, self.search_url, name):
            title = str(org["title"])
            if not is_local_authority(org):
                continue
            if any(w in title.lower() for w in _EXCLUDED_TITLE_WORDS):
                continue
            council_type = infer_council_type(title)
            out.append(
                RegistryCandidate(
                    entity_type=self.entity_type,
                    registry_id=str(org["slug"]),
                    name=title,
                    status=org.get("organisation_state"),
                    details={
                        "council_type": council_type,
                        "tier": infer_tier(council_type),
                        "nation": "England",
                        "homepage_url": (
                            f"https://www.gov.uk{org['link']}" if org.get("link") else None
                        ),
                    },
                    raw=org,
                )
            )
        return out

    def search(self, name: str) -> list[RegistryCandidate]:
        if self.directory_csv is not None:
            return self._search_directory(name)
        return self._search_gov_uk(name)
