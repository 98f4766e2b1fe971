from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from models import Base

STAGE_STATUSES = ("queued", "running", "succeeded", "failed", "skipped")


class PipelineRunStage(Base):
    """Outcome of one stage within one run."""

    __tablename__ = "pipeline_run_stages"
    __table_args__ = (
        UniqueConstraint("run_id", "stage_id", name="uq_pipeline_run_stages_run_stage"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    run_id = Column(
        Integer,
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_id = Column(String, nullable=False)

    status = Column(String, nullable=False, default="queued")

    processed = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    matched = Column(Integer, nullable=False, default=0)

    metrics = Column(JSON, nullable=True)
    warnings = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
