from __future__ import annotations

import json

import pytest

from pytests.common import FakeHttpSession, FakeResponse
from utils.companies_house_api import CompaniesHouseClient, normalize_company_number
from utils.council_directory import (
    CouncilDirectoryClient,
    infer_council_type,
    infer_nation,
    infer_tier,
)
from utils.gov_uk_api import GovUkClient, parse_search_results, slug_from_link
from utils.nhs_ods_api import NhsOdsClient, search_terms_for
from utils.postcodes_io import PostcodesIoClient, normalize_uk_postcode
from utils.registry_http import MinIntervalRateLimiter, RegistryHttpClient


def _json(payload, status_code=200):
    return FakeResponse(status_code=status_code, content=json.dumps(payload).encode("utf-8"))


def _http(responses):
    session = FakeHttpSession(responses)
    http = RegistryHttpClient(
        name="test",
        rate_limiter=MinIntervalRateLimiter(0),
        session=session,
        sleep=lambda _s: None,
    )
    return http, session


def test_normalize_company_number():
    assert normalize_company_number("1234") == "00001234"
    assert normalize_company_number(" sc123456 ") == "SC123456"


def test_companies_house_requires_key_without_injected_http(monkeypatch):
    import settings

    monkeypatch.setitem(settings.SETTINGS, "COMPANIES_HOUSE_API_KEY", None)
    with pytest.raises(ValueError):
        CompaniesHouseClient()


def test_companies_house_search_parses_items():
    http, session = _http(
        [
            _json(
                {
                    "items": [
                        {
                            "company_number": "1234567",
                            "title": "ACME SUPPLIES LIMITED",
                            "company_status": "active",
                            "company_type": "ltd",
                            "address": {"postal_code": "LS1 1AA", "locality": "Leeds"},
                        },
                        {"title": "missing number"},
                    ]
                }
            )
        ]
    )
    client = CompaniesHouseClient(http=http, base_url="https://ch.example.test")

    hits = client.search("Acme Supplies")

    assert len(hits) == 1
    c = hits[0]
    assert c.registry_id == "01234567"
    assert c.postal_code == "LS1 1AA"
    assert c.details["company_number"] == "01234567"
    assert session.calls[0]["url"] == "https://ch.example.test/search/companies"
    assert session.calls[0]["params"]["q"] == "Acme Supplies"

    ranked = client.rank("Acme Supplies Ltd", hits)
    assert ranked[0].score == 1.0


def test_companies_house_fetch_profile():
    http, _session = _http(
        [
            _json(
                {
                    "company_number": "01234567",
                    "company_name": "ACME SUPPLIES LIMITED",
                    "company_status": "active",
                    "type": "ltd",
                    "sic_codes": ["46900"],
                    "registered_office_address": {
                        "address_line_1": "1 Road",
                        "postal_code": "LS1 1AA",
                    },
                }
            ),
            FakeResponse(status_code=404, content=b""),
        ]
    )
    client = CompaniesHouseClient(http=http, base_url="https://ch.example.test")

    profile = client.fetch_profile("1234567")
    assert profile.name == "ACME SUPPLIES LIMITED"
    assert profile.address_line_1 == "1 Road"
    assert profile.details["sic_codes"] == ["46900"]

    assert client.fetch_profile("99999999") is None


def test_nhs_search_terms_for():
    assert search_terms_for("Leeds & York ICB") == [
        "Leeds & York ICB",
        "Leeds and York ICB",
        "Leeds & York Integrated Care Board",
        "Leeds and York Integrated Care Board",
    ]
    assert search_terms_for("Leeds Teaching Hospitals — cost centre 4") == ["Leeds Teaching Hospitals"]


def test_nhs_search_merges_results_by_ods_code():
    org = {"OrgId": "rr8", "Name": "LEEDS TEACHING HOSPITALS NHS TRUST", "Status": "Active", "PostCode": "LS9 7TF"}
    http, session = _http(
        [
            _json({"Organisations": [org]}),
            _json({"Organisations": [org, {"OrgId": "", "Name": "broken"}]}),
        ]
    )
    client = NhsOdsClient(http=http, base_url="https://ods.example.test")

    hits = client.search("Leeds Teaching Hospitals & Partners")

    assert len(session.calls) == 2
    assert [h.registry_id for h in hits] == ["RR8"]
    assert hits[0].details["ods_code"] == "RR8"
    assert hits[0].details["is_active"] is True


_GOV_UK_PAYLOAD = {
    "results": [
        {
            "title": "Department for Education",
            "link": "/government/organisations/department-for-education",
            "organisation_type": "ministerial_department",
            "organisation_state": "live",
        },
        {
            "title": "Leeds City Council",
            "link": "/government/organisations/leeds-city-council",
            "organisation_type": "local_authority",
        },
        {"title": "No slug at all", "link": "/somewhere/else"},
    ]
}


def test_gov_uk_parse_and_slug():
    assert slug_from_link("/government/organisations/hm-treasury/") == "hm-treasury"
    assert slug_from_link("/elsewhere") is None

    orgs = parse_search_results(_GOV_UK_PAYLOAD)
    assert [o["slug"] for o in orgs] == ["department-for-education", "leeds-city-council"]


def test_gov_uk_client_excludes_local_authorities():
    http, _session = _http([_json(_GOV_UK_PAYLOAD)])
    client = GovUkClient(http=http, search_url="https://gov.example.test/api/search.json")

    hits = client.search("Department for Education")
    assert [h.registry_id for h in hits] == ["department-for-education"]
    assert hits[0].details["slug"] == "department-for-education"


def test_council_client_gov_uk_fallback(monkeypatch):
    import settings

    monkeypatch.setitem(settings.SETTINGS, "LOCAL_GOV_DIRECTORY_CSV", None)
    http, _session = _http([_json(_GOV_UK_PAYLOAD)])
    client = CouncilDirectoryClient(http=http, search_url="https://gov.example.test/api/search.json")

    hits = client.search("Leeds City Council")
    assert [h.registry_id for h in hits] == ["leeds-city-council"]
    assert hits[0].details["council_type"] == "city"


def test_council_client_directory_csv(tmp_path):
    csv_path = tmp_path / "lad.csv"
    csv_path.write_text(
        "LAD23CD,LAD23NM\nE08000035,Leeds\nW06000015,Cardiff\nE07000026,Allerdale\n",
        encoding="utf-8",
    )
    http, session = _http([])
    client = CouncilDirectoryClient(directory_csv=csv_path, http=http)

    hits = client.search("Leeds City Council")

    assert session.calls == []
    assert [h.registry_id for h in hits] == ["E08000035"]
    assert hits[0].details["gss_code"] == "E08000035"
    assert hits[0].country == "England"


def test_council_inference_helpers():
    assert infer_council_type("Kent County Council") == "county"
    assert infer_tier("county") == "tier1"
    assert infer_council_type("Selby District Council") == "district"
    assert infer_tier("district") == "tier2"
    assert infer_council_type("London Borough of Camden") == "london_borough"
    assert infer_council_type("Rutland") == "unitary"
    assert infer_nation("W06000015") == "Wales"
    assert infer_nation("S12000033") == "Scotland"
    assert infer_nation(None) == "England"


def test_postcodes_io_bulk_lookup():
    http, session = _http(
        [
            _json(
                {
                    "result": [
                        {
                            "query": "LS1 1AA",
                            "result": {"latitude": 53.8, "longitude": -1.5, "region": "Yorkshire", "country": "England"},
                        },
                        {"query": "ZZ9 9ZZ", "result": None},
                    ]
                }
            )
        ]
    )
    client = PostcodesIoClient(http=http, base_url="https://pc.example.test")

    found = client.bulk_lookup(["ls1  1aa", "LS1 1AA", "ZZ9 9ZZ", ""])

    assert session.calls[0]["json"] == {"postcodes": ["LS1 1AA", "ZZ9 9ZZ"]}
    assert found == {"LS1 1AA": {"latitude": 53.8, "longitude": -1.5, "region": "Yorkshire", "country": "England"}}


def test_postcodes_io_rejects_more_than_100():
    client = PostcodesIoClient(http=_http([])[0])
    with pytest.raises(ValueError):
        client.bulk_lookup([f"AB{i} 1CD" for i in range(101)])
    assert client.bulk_lookup([]) == {}
    assert normalize_uk_postcode(" ls1   1aa ") == "LS1 1AA"
