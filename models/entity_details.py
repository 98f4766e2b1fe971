from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String

from models import Base
from utils.time_utils import utcnow_sa_default


def _entity_pk():
    return Column(
        Integer,
        ForeignKey("entities.id", ondelete="CASCADE"),
        primary_key=True,
        nullable=False,
    )


class CompanyProfile(Base):
    """Companies House profile (1:1 with a `company` entity)."""

    __tablename__ = "company_profiles"

    entity_id = _entity_pk()

    company_number = Column(String, nullable=False, unique=True)
    company_status = Column(String, nullable=True)
    company_type = Column(String, nullable=True)
    date_of_creation = Column(String, nullable=True)
    date_of_cessation = Column(String, nullable=True)
    jurisdiction = Column(String, nullable=True)
    sic_codes = Column(JSON, nullable=True)
    previous_names = Column(JSON, nullable=True)
    etag = Column(String, nullable=True)

    raw_data = Column(JSON, nullable=True)
    fetched_at = Column(DateTime, nullable=False, default=utcnow_sa_default)


class HealthcareProvider(Base):
    """NHS ODS organisation (1:1 with a `healthcare_provider` entity)."""

    __tablename__ = "healthcare_providers"

    entity_id = _entity_pk()

    ods_code = Column(String, nullable=False, unique=True)
    primary_role_id = Column(String, nullable=True)
    primary_role_description = Column(String, nullable=True)
    org_status = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=True)

    raw_data = Column(JSON, nullable=True)
    fetched_at = Column(DateTime, nullable=False, default=utcnow_sa_default)


class LocalGovernment(Base):
    """Council (1:1 with a `local_government` entity)."""

    __tablename__ = "local_governments"

    entity_id = _entity_pk()

    gss_code = Column(String, nullable=True)
    council_type = Column(String, nullable=True)
    tier = Column(String, nullable=True)
    nation = Column(String, nullable=True)
    homepage_url = Column(String, nullable=True)

    raw_data = Column(JSON, nullable=True)
    fetched_at = Column(DateTime, nullable=False, default=utcnow_sa_default)


class NationalGovernment(Base):
    """GOV.UK organisation (1:1 with a `national_government` entity)."""

    __tablename__ = "national_governments"

    entity_id = _entity_pk()

    slug = Column(String, nullable=False, unique=True)
    acronym = Column(String, nullable=True)
    organisation_type = Column(String, nullable=True)
    organisation_state = Column(String, nullable=True)
    link = Column(String, nullable=True)

    raw_data = Column(JSON, nullable=True)
    fetched_at = Column(DateTime, nullable=False, default=utcnow_sa_default)


# entity_type -> extension model
DETAIL_MODELS = {
    "company": CompanyProfile,
    "healthcare_provider": HealthcareProvider,
    "local_government": LocalGovernment,
    "national_government": NationalGovernment,
}
