from __future__ import annotations

from flask import Blueprint, jsonify, redirect

import db
from api.api_v1.common import parse_body
from api.schemas.api_responses import fail, ok
from api.schemas.requests import PresignRequest
from logging_utils import get_logger
from pipeline import ledger
from settings import get_setting
from utils.object_storage import ObjectStorageError, build_object_key, presign_url
from utils.time_utils import isoformat_utc

logger = get_logger(__name__)

assets_v1_bp = Blueprint("assets_v1", __name__)


def _storage_unavailable(e: ObjectStorageError):
    logger.error("Object storage not usable: %s", e)
    return jsonify(fail(str(e), code="object_storage_unavailable")), 503


@assets_v1_bp.route("/assets/presign", methods=["POST"])
def presign_upload():
    """Register an asset and return a presigned PUT URL for uploading it.

    A checksum already on file is rejected with 409 `duplicate_checksum`
    unless `force` is set.
    """

    body = parse_body(PresignRequest)

    session = db.SessionLocal()
    try:
        if body.checksum and not body.force:
            existing = ledger.find_asset_by_checksum(session, body.checksum)
            if existing is not None:
                return (
                    jsonify(
                        fail(
                            "An asset with the same checksum already exists",
                            code="duplicate_checksum",
                            details={
                                "asset_id": existing.id,
                                "original_name": existing.original_name,
                                "size_bytes": existing.size_bytes,
                                "created_at": isoformat_utc(existing.created_at),
                            },
                        )
                    ),
                    409,
                )

        object_key = build_object_key(body.file_name)
        expires = int(get_setting("UPLOAD_URL_EXPIRES_SECONDS", 900))
        try:
            upload_url = presign_url("PUT", object_key, expires)
        except ObjectStorageError as e:
            return _storage_unavailable(e)

        asset = ledger.create_asset(
            session,
            object_key=object_key,
            original_name=body.file_name,
            content_type=body.content_type,
            size_bytes=body.size_bytes,
            checksum=body.checksum,
        )
        data = {
            "asset_id": asset.id,
            "object_key": asset.object_key,
            "upload_url": upload_url,
            "expires_in": expires,
        }
    finally:
        session.close()

    logger.info("Presigned upload | asset=%s key=%s", data["asset_id"], data["object_key"])
    return jsonify(ok(data)), 201


@assets_v1_bp.route("/assets/<int:asset_id>/download", methods=["GET"])
def download_asset(asset_id: int):
    """Redirect to a short-lived presigned GET URL."""

    session = db.SessionLocal()
    try:
        asset = ledger.get_asset(session, asset_id)
        object_key = asset.object_key if asset is not None else None
    finally:
        session.close()
    if object_key is None:
        return jsonify(fail(f"asset {asset_id} not found", code="not_found")), 404

    try:
        url = presign_url("GET", object_key, int(get_setting("DOWNLOAD_URL_EXPIRES_SECONDS", 60)))
    except ObjectStorageError as e:
        return _storage_unavailable(e)
    return redirect(url, code=302)
