"""JSON envelope for every API response: ``{ok, data, error, meta}``.

`meta.request_id` is filled from the current request (see `app.create_app`),
so clients can quote it when reporting a failed run or a rejected upload.
"""

from __future__ import annotations

from typing import Any, Dict, Generic, Optional, TypeVar

from flask import g, has_request_context
from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class ApiError(BaseModel):
    # Stable machine-readable code (e.g. `asset_not_found`, `duplicate_checksum`).
    code: str = Field(default="error")
    message: str
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="ignore")


class ApiMeta(BaseModel):
    request_id: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class ApiResponse(BaseModel, Generic[T]):
    ok: bool
    data: Optional[T] = None
    error: Optional[ApiError] = None
    meta: ApiMeta = Field(default_factory=ApiMeta)

    model_config = ConfigDict(extra="ignore")


def current_meta() -> ApiMeta:
    """Meta for the request being served; empty outside a request."""

    if not has_request_context():
        return ApiMeta()
    return ApiMeta(request_id=getattr(g, "request_id", None))


def ok(data: T = None, *, meta: Optional[ApiMeta] = None) -> Dict[str, Any]:
    payload = ApiResponse[Any](ok=True, data=data, error=None, meta=meta or current_meta())
    return payload.model_dump(mode="json")


def fail(
    message: str,
    *,
    code: str = "error",
    details: Optional[Dict[str, Any]] = None,
    meta: Optional[ApiMeta] = None,
) -> Dict[str, Any]:
    payload = ApiResponse[None](
        ok=False,
        data=None,
        error=ApiError(code=code, message=message, details=details),
        meta=meta or current_meta(),
    )
    return payload.model_dump(mode="json")
