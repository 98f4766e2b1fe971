from __future__ import annotations

import threading

import pytest

from models.entities import Entity
from models.entity_details import CompanyProfile, HealthcareProvider, LocalGovernment
from pipeline.entity_store import find_or_create_entity, get_entity_by_registry_id
from pytests.common import candidate


def test_find_or_create_entity_creates_once(session):
    c = candidate(
        "company",
        "01234567",
        "ACME LIMITED",
        postal_code="LS1 1AA",
        details={"company_status": "active", "not_a_column": "ignored"},
        raw={"company_number": "01234567"},
    )

    entity, created = find_or_create_entity(session, c)
    again, created_again = find_or_create_entity(session, c)

    assert created is True
    assert created_again is False
    assert again.id == entity.id
    assert entity.postal_code == "LS1 1AA"

    profile = session.get(CompanyProfile, entity.id)
    assert profile.company_number == "01234567"
    assert profile.company_status == "active"
    assert profile.raw_data == {"company_number": "01234567"}


def test_extension_row_defaults_registry_id_column(session):
    nhs, _ = find_or_create_entity(session, candidate("healthcare_provider", "RR8", "LEEDS TEACHING"))
    council, _ = find_or_create_entity(session, candidate("local_government", "leeds-city-council", "Leeds"))

    assert session.get(HealthcareProvider, nhs.id).ods_code == "RR8"
    assert session.get(LocalGovernment, council.id).gss_code is None


@pytest.mark.parametrize(
    "entity_type, registry_id",
    [("charity", "123"), ("company", ""), ("company", "   ")],
)
def test_find_or_create_entity_rejects_bad_input(session, entity_type, registry_id):
    with pytest.raises(ValueError):
        find_or_create_entity(session, candidate(entity_type, registry_id, "X"))


def test_concurrent_creators_end_with_one_row(app_db):
    barrier = threading.Barrier(2, timeout=10)
    results: list[int] = []
    errors: list[Exception] = []
    c = candidate("company", "09999999", "RACE CONDITION LTD")

    def create():
        session = app_db()
        try:
            barrier.wait()
            entity, _created = find_or_create_entity(session, c)
            results.append(entity.id)
        except Exception as e:
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=create) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(results) == 2
    assert results[0] == results[1]

    session = app_db()
    try:
        assert session.query(Entity).filter(Entity.registry_id == "09999999").count() == 1
        assert get_entity_by_registry_id(session, "company", "09999999").id == results[0]
        assert session.query(CompanyProfile).count() == 1
    finally:
        session.close()
