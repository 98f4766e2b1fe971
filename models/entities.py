from __future__ import annotations

from sqlalchemy import Column, DateTime, Float, Index, Integer, Numeric, String, UniqueConstraint

from models import Base
from utils.time_utils import utcnow_sa_default

ENTITY_TYPES = ("company", "healthcare_provider", "local_government", "national_government")


class Entity(Base):
    """Canonical organisation resolved from an external registry.

    Uniqueness:
    - `(entity_type, registry_id)` is unique. The match engine relies on this
      constraint (not a lock) to detect a concurrent creator and fall back to
      the row already on file.

    registry_id examples:
    - company: Companies House number ('01234567')
    - healthcare_provider: ODS code ('RJ1')
    - local_government: GSS code ('E06000001') or GOV.UK slug
    - national_government: GOV.UK organisation slug ('hm-revenue-customs')
    """

    __tablename__ = "entities"
    __table_args__ = (
        UniqueConstraint("entity_type", "registry_id", name="uq_entities_type_registry_id"),
        Index("ix_entities_postal_code", "postal_code"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    entity_type = Column(String, nullable=False)
    registry_id = Column(String, nullable=False)

    name = Column(String, nullable=False)
    status = Column(String, nullable=True)

    # Location
    address_line_1 = Column(String, nullable=True)
    address_line_2 = Column(String, nullable=True)
    locality = Column(String, nullable=True)
    postal_code = Column(String, nullable=True)
    country = Column(String, nullable=True)
    region = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # Cached aggregates maintained by the refresh_spend_totals stage.
    buyer_total_spend = Column(Numeric(18, 2), nullable=True)
    supplier_total_received = Column(Numeric(18, 2), nullable=True)
    spend_totals_updated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow_sa_default)
