from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declared_attr

from models import Base
from utils.time_utils import utcnow_sa_default

MATCH_STATUSES = ("pending", "matched", "no_match")

_MATCHED_ONLY = "match_status = 'matched'"


class _CounterpartyColumns:
    """Name-as-observed plus match lifecycle, shared by suppliers and buyers.

    Uniqueness:
    - `name` is unique: one record per distinct observed name.
    - `entity_id` is unique among `matched` rows (partial index). A second name
      that resolves to an entity already held by another record violates it,
      and the match engine turns that violation into a merge.
    """

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String, nullable=False, unique=True)

    match_status = Column(String, nullable=False, default="pending")
    match_confidence = Column(Float, nullable=True)
    manually_verified = Column(Boolean, nullable=False, default=False)
    match_attempted_at = Column(DateTime, nullable=True)

    # no_match reason code, or review/ambiguity note while pending.
    match_note = Column(Text, nullable=True)

    # Best candidate surfaced for manual review (not applied).
    candidate_entity_type = Column(String, nullable=True)
    candidate_registry_id = Column(String, nullable=True)
    candidate_name = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow_sa_default)

    @declared_attr
    def entity_id(cls):
        return Column(
            Integer,
            ForeignKey("entities.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        )

    @declared_attr
    def __table_args__(cls):
        return (
            Index(
                f"uq_{cls.__tablename__}_matched_entity",
                "entity_id",
                unique=True,
                sqlite_where=text(_MATCHED_ONLY),
                postgresql_where=text(_MATCHED_ONLY),
            ),
            Index(f"ix_{cls.__tablename__}_match_status", "match_status"),
        )


class Supplier(_CounterpartyColumns, Base):
    __tablename__ = "suppliers"


class Buyer(_CounterpartyColumns, Base):
    __tablename__ = "buyers"

    # Registry type implied by the publishing organisation (run.org_type).
    entity_type_hint = Column(String, nullable=True)


class CounterpartyAlias(Base):
    """A name that was merged away, pointing at the surviving record.

    Import resolves names through this table first so a merged duplicate is
    never recreated by a later file.
    """

    __tablename__ = "counterparty_aliases"
    __table_args__ = (
        UniqueConstraint("kind", "name", name="uq_counterparty_aliases_kind_name"),
        Index("ix_counterparty_aliases_target", "kind", "counterparty_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    # 'supplier' | 'buyer'
    kind = Column(String, nullable=False)
    name = Column(String, nullable=False)
    counterparty_id = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)


COUNTERPARTY_MODELS = {"supplier": Supplier, "buyer": Buyer}
