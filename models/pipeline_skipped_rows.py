from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text

from models import Base
from utils.time_utils import utcnow_sa_default

# Reason codes stored in `reason`; human detail goes in `detail`.
SKIP_PARSE_ERROR = "parse_error"
SKIP_MISSING_FIELD = "missing_field"


class PipelineSkippedRow(Base):
    """An input row the import stage could not process. Write-once."""

    __tablename__ = "pipeline_skipped_rows"
    __table_args__ = (Index("ix_pipeline_skipped_rows_run", "run_id", "id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)

    run_id = Column(
        Integer,
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_id = Column(String, nullable=False)

    sheet_name = Column(String, nullable=True)
    # 1-based row number as shown in a spreadsheet application.
    row_number = Column(Integer, nullable=True)

    reason = Column(String, nullable=False)
    detail = Column(Text, nullable=True)
    raw_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
