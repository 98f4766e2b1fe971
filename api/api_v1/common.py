from __future__ import annotations

from typing import Any, Type, TypeVar

import pydantic
from flask import jsonify, request

from api.schemas.api_responses import fail
from pipeline.errors import PipelineError, RegistryRequestError, RegistryUnavailable

M = TypeVar("M", bound=pydantic.BaseModel)

_STATUS_BY_CODE = {
    "not_found": 404,
    "asset_not_found": 404,
    "duplicate_checksum": 409,
    "run_active": 409,
    "run_not_pending": 409,
}


class InvalidRequestBody(Exception):
    """Request body failed schema validation."""

    def __init__(self, errors: list[dict[str, Any]]) -> None:
        super().__init__("invalid request body")
        self.errors = errors


def parse_body(model: Type[M]) -> M:
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        raise InvalidRequestBody(
            [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in e.errors()]
        ) from e


def bad_request_response(e: InvalidRequestBody):
    return jsonify(fail(str(e), code="invalid_request", details={"errors": e.errors})), 400


def pipeline_error_response(e: PipelineError):
    if isinstance(e, RegistryUnavailable):
        status = 503
    elif isinstance(e, RegistryRequestError):
        status = 502
    else:
        status = _STATUS_BY_CODE.get(e.code, 400)
    return jsonify(fail(e.message, code=e.code, details=e.meta or None)), status


def int_arg(name: str, default: int | None = None) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default
