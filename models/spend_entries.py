from __future__ import annotations

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)

from models import Base
from utils.time_utils import utcnow_sa_default


class SpendEntry(Base):
    """One payment line imported from an asset.

    `(asset_id, row_hash)` is the natural key: re-importing the same asset
    inserts nothing new. `row_hash` covers sheet, row position and cell content.
    """

    __tablename__ = "spend_entries"
    __table_args__ = (
        UniqueConstraint("asset_id", "row_hash", name="uq_spend_entries_asset_row_hash"),
        Index("ix_spend_entries_buyer", "buyer_id"),
        Index("ix_spend_entries_supplier", "supplier_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    asset_id = Column(
        Integer,
        ForeignKey("pipeline_assets.id", ondelete="RESTRICT"),
        nullable=False,
    )
    run_id = Column(
        Integer,
        ForeignKey("pipeline_runs.id", ondelete="SET NULL"),
        nullable=True,
    )

    buyer_id = Column(Integer, ForeignKey("buyers.id", ondelete="RESTRICT"), nullable=False)
    supplier_id = Column(
        Integer, ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False
    )

    raw_buyer = Column(String, nullable=True)
    raw_supplier = Column(String, nullable=True)

    amount = Column(Numeric(18, 2), nullable=False)
    raw_amount = Column(String, nullable=True)
    payment_date = Column(Date, nullable=True)
    payment_date_raw = Column(String, nullable=True)

    source_sheet = Column(String, nullable=True)
    source_row_number = Column(Integer, nullable=True)
    row_hash = Column(String, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
