from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CreateRunRequest(BaseModel):
    """Body of POST /api/v1/runs."""

    asset_id: Optional[int] = Field(default=None, ge=1)
    dry_run: bool = False
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    org_type: Optional[Literal["nhs", "council", "government_department"]] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = Field(default=None, max_length=200)

    model_config = ConfigDict(extra="forbid")


class PresignRequest(BaseModel):
    """Body of POST /api/v1/assets/presign."""

    file_name: str = Field(min_length=1, max_length=255)
    content_type: Optional[str] = Field(default=None, max_length=200)
    size_bytes: Optional[int] = Field(default=None, ge=0)
    checksum: Optional[str] = Field(default=None, max_length=128)
    force: bool = False

    model_config = ConfigDict(extra="forbid")


class LinkRequest(BaseModel):
    """Manual link (`entity_type` + `registry_id`) or manual no-match."""

    entity_type: Optional[
        Literal["company", "healthcare_provider", "local_government", "national_government"]
    ] = None
    registry_id: Optional[str] = Field(default=None, max_length=64)
    name: Optional[str] = Field(default=None, max_length=500)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    no_match: bool = False

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _link_or_no_match(self) -> "LinkRequest":
        if self.no_match:
            return self
        if not self.entity_type or not (self.registry_id or "").strip():
            raise ValueError("entity_type and registry_id are required unless no_match is true")
        return self


class MergeRequest(BaseModel):
    source_id: int = Field(ge=1)
    target_id: int = Field(ge=1)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _distinct(self) -> "MergeRequest":
        if self.source_id == self.target_id:
            raise ValueError("source_id and target_id must differ")
        return self
