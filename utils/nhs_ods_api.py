"""NHS Organisation Data Service (ODS) ORD API client.

Endpoint:
  GET {base}/organisations?Name=...&Status=Active

ODS name search is a literal substring match, so the client tries a few
spelling variations (``&``/``and``, ``ICB``/``Integrated Care Board``) and
merges the results by ODS code.
"""

from __future__ import annotations

import re
from typing import Any

from logging_utils import get_logger
from settings import get_setting
from utils.registry_base import RegistryCandidate, RegistryClient

logger = get_logger(__name__)


def search_terms_for(name: str) -> list[str]:
    """Return the distinct ODS search terms to try for `name`, most likely first."""

    base = re.sub(r"\s*—.*$", "", name or "").strip()
    variations = [
        base,
        base.replace("&", "and"),
        re.sub(r"\bICB\b", "Integrated Care Board", base, flags=re.I),
        re.sub(r"\bICB\b", "Integrated Care Board", base.replace("&", "and"), flags=re.I),
    ]
    seen: list[str] = []
    for term in variations:
        if term and term not in seen:
            seen.append(term)
    return seen


def _candidate(org: dict[str, Any]) -> RegistryCandidate | None:
    org_id = (org.get("OrgId") or "").strip().upper()
    name = (org.get("Name") or "").strip()
    if not org_id or not name:
        return None
    status = org.get("Status")
    return RegistryCandidate(
        entity_type="healthcare_provider",
        registry_id=org_id,
        name=name,
        status=status,
        postal_code=org.get("PostCode"),
        country="England",
        details={
            "ods_code": org_id,
            "primary_role_id": org.get("PrimaryRoleId"),
            "primary_role_description": org.get("PrimaryRoleDescription"),
            "org_status": status,
            "is_active": (status or "").lower() == "active",
        },
        raw=org,
    )


class NhsOdsClient(RegistryClient):
    entity_type = "healthcare_provider"
    display_name = "nhs_ods"

    def __init__(
        self,
        *,
        base_url: str | None = None,
        rate_limit_seconds: float | None = None,
        **kwargs: Any,
    ) -> None:
        self.base_url = str(base_url or get_setting("NHS_ODS_BASE_URL")).rstrip("/")
        super().__init__(
            rate_limit_seconds=(
                rate_limit_seconds
                if rate_limit_seconds is not None
                else float(get_setting("NHS_ODS_RATE_LIMIT_SECONDS", 0.3))
            ),
            **kwargs,
        )

    def search(self, name: str) -> list[RegistryCandidate]:
        out: list[RegistryCandidate] = []
        seen_ids: set[str] = set()
        for term in search_terms_for(name):
            data = self.http.get_json(
                f"{self.base_url}/organisations",
                params={"Name": term, "Status": "Active"},
                allow_404=True,
            )
            for org in (data or {}).get("Organisations") or []:
                c = _candidate(org)
                if c is None or c.registry_id in seen_ids:
                    continue
                seen_ids.add(c.registry_id)
                out.append(c)
        return out
