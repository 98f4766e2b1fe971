from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text

from models import Base
from utils.time_utils import utcnow_sa_default

LOG_LEVELS = ("debug", "info", "warn", "error")


class PipelineRunLog(Base):
    """Durable copy of every run log line; source of truth once a run ends."""

    __tablename__ = "pipeline_run_logs"
    __table_args__ = (Index("ix_pipeline_run_logs_run_ts", "run_id", "ts"),)

    id = Column(Integer, primary_key=True, autoincrement=True)

    run_id = Column(
        Integer,
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        nullable=False,
    )

    ts = Column(DateTime, nullable=False, default=utcnow_sa_default)
    level = Column(String, nullable=False, default="info")
    message = Column(Text, nullable=False)
    meta = Column(JSON, nullable=True)
