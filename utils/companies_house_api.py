"""Companies House public data API client.

Endpoints:
  GET {base}/search/companies?q=...&items_per_page=5
  GET {base}/company/{company_number}

Auth is HTTP basic with the API key as username and an empty password.
"""

from __future__ import annotations

from typing import Any

from logging_utils import get_logger
from settings import get_setting
from utils.registry_base import RegistryCandidate, RegistryClient

logger = get_logger(__name__)

SEARCH_ITEMS_PER_PAGE = 5


def normalize_company_number(value: str) -> str:
    """Companies House numbers are 8 chars; numeric ones are zero-padded."""

    raw = (value or "").strip().upper()
    if raw.isdigit():
        return raw.zfill(8)
    return raw


def _candidate_from_search_item(item: dict[str, Any]) -> RegistryCandidate | None:
    number = item.get("company_number")
    title = item.get("title")
    if not number or not title:
        return None
    address = item.get("address") or {}
    return RegistryCandidate(
        entity_type="company",
        registry_id=normalize_company_number(str(number)),
        name=str(title),
        status=item.get("company_status"),
        address_line_1=address.get("address_line_1"),
        locality=address.get("locality"),
        postal_code=address.get("postal_code"),
        country=address.get("country"),
        details={
            "company_number": normalize_company_number(str(number)),
            "company_status": item.get("company_status"),
            "company_type": item.get("company_type"),
            "date_of_creation": item.get("date_of_creation"),
        },
        raw=item,
    )


def candidate_from_profile(profile: dict[str, Any]) -> RegistryCandidate:
    """Build a full candidate (address + extension fields) from a profile payload."""

    number = normalize_company_number(str(profile.get("company_number") or ""))
    office = profile.get("registered_office_address") or {}
    return RegistryCandidate(
        entity_type="company",
        registry_id=number,
        name=str(profile.get("company_name") or number),
        status=profile.get("company_status"),
        address_line_1=office.get("address_line_1"),
        address_line_2=office.get("address_line_2"),
        locality=office.get("locality"),
        postal_code=office.get("postal_code"),
        country=office.get("country"),
        details={
            "company_number": number,
            "company_status": profile.get("company_status"),
            "company_type": profile.get("type"),
            "date_of_creation": profile.get("date_of_creation"),
            "date_of_cessation": profile.get("date_of_cessation"),
            "jurisdiction": profile.get("jurisdiction"),
            "sic_codes": profile.get("sic_codes"),
            "previous_names": profile.get("previous_names"),
            "etag": profile.get("etag"),
        },
        raw=profile,
    )


class CompaniesHouseClient(RegistryClient):
    entity_type = "company"
    display_name = "companies_house"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        rate_limit_seconds: float | None = None,
        **kwargs: Any,
    ) -> None:
        key = api_key or get_setting("COMPANIES_HOUSE_API_KEY")
        if not key and "http" not in kwargs:
            raise ValueError("COMPANIES_HOUSE_API_KEY is not configured")
        self.base_url = str(base_url or get_setting("COMPANIES_HOUSE_BASE_URL")).rstrip("/")
        if key:
            kwargs.setdefault("auth", (str(key), ""))
        super().__init__(
            rate_limit_seconds=(
                rate_limit_seconds
                if rate_limit_seconds is not None
                else float(get_setting("COMPANIES_HOUSE_RATE_LIMIT_SECONDS", 0.6))
            ),
            **kwargs,
        )

    def search(self, name: str) -> list[RegistryCandidate]:
        data = self.http.get_json(
            f"{self.base_url}/search/companies",
            params={"q": name, "items_per_page": SEARCH_ITEMS_PER_PAGE},
        )
        out: list[RegistryCandidate] = []
        for item in (data or {}).get("items") or []:
            c = _candidate_from_search_item(item)
            if c is not None:
                out.append(c)
        logger.debug("companies_house search q=%r hits=%s", name, len(out))
        return out

    def fetch_profile(self, company_number: str) -> RegistryCandidate | None:
        """Fetch the full company profile; None if the number is unknown."""

        number = normalize_company_number(company_number)
        data = self.http.get_json(f"{self.base_url}/company/{number}", allow_404=True)
        if not data:
            return None
        return candidate_from_profile(data)
