from __future__ import annotations

from sqlalchemy import BigInteger, Column, DateTime, Integer, String

from models import Base
from utils.time_utils import utcnow_sa_default


class Asset(Base):
    """An uploaded spend file held in object storage.

    Rows are written once at presign time and never updated. Runs reference
    assets with ``ondelete=RESTRICT`` so an asset cannot disappear under a run.
    """

    __tablename__ = "pipeline_assets"

    id = Column(Integer, primary_key=True, autoincrement=True)

    object_key = Column(String, nullable=False, unique=True)
    original_name = Column(String, nullable=False)
    content_type = Column(String, nullable=True)
    size_bytes = Column(BigInteger, nullable=True)

    # Hex sha256 of the file as reported by the uploader; used to refuse re-uploads.
    checksum = Column(String, nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
