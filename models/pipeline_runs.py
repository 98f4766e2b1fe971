from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from models import Base
from utils.time_utils import utcnow_sa_default

RUN_STATUSES = ("pending", "running", "succeeded", "failed", "deleted")
TERMINAL_RUN_STATUSES = frozenset({"succeeded", "failed", "deleted"})

ORG_TYPES = ("nhs", "council", "government_department")

# Registry entity type implied for buyers published under each org_type.
BUYER_ENTITY_TYPE_BY_ORG_TYPE = {
    "nhs": "healthcare_provider",
    "council": "local_government",
    "government_department": "national_government",
}


class PipelineRun(Base):
    """One execution of the stage pipeline against zero or one asset.

    Status and timestamps are written by the stage executor only; deletion flips
    ``status`` to ``deleted`` and keeps the row for audit.
    """

    __tablename__ = "pipeline_runs"
    __table_args__ = (
        Index("ix_pipeline_runs_status", "status"),
        Index("ix_pipeline_runs_created_at", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    asset_id = Column(
        Integer,
        ForeignKey("pipeline_assets.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )

    # Publishing organisation type of the file; selects the buyer registry.
    org_type = Column(String, nullable=True)

    trigger = Column(String, nullable=False, default="api")
    created_by = Column(String, nullable=True)

    status = Column(String, nullable=False, default="pending")
    dry_run = Column(Boolean, nullable=False, default=False)

    from_stage = Column(String, nullable=True)
    to_stage = Column(String, nullable=True)

    # Stage parameters (limits, threshold overrides).
    params = Column(JSON, nullable=True)

    error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
