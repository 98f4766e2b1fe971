"""SQLAlchemy models package.

Important: This project uses a single declarative Base defined in `db.py`.
Import `Base` from this package in all model modules.

Example:

    Base.metadata.create_all(...)

This keeps `Base.metadata` consistent across the app.
"""

from db import Base  # re-export a single shared Base

# Import models so they are registered with SQLAlchemy metadata on startup.
# This makes `Base.metadata.create_all()` create all tables for a fresh DB.
from models.assets import Asset  # noqa: F401
from models.entities import Entity  # noqa: F401
from models.entity_details import (  # noqa: F401
    CompanyProfile,
    HealthcareProvider,
    LocalGovernment,
    NationalGovernment,
)
from models.counterparties import Buyer, CounterpartyAlias, Supplier  # noqa: F401
from models.pipeline_runs import PipelineRun  # noqa: F401
from models.pipeline_run_stages import PipelineRunStage  # noqa: F401
from models.pipeline_run_logs import PipelineRunLog  # noqa: F401
from models.pipeline_skipped_rows import PipelineSkippedRow  # noqa: F401
from models.spend_entries import SpendEntry  # noqa: F401
