"""App settings.

Flask loads this module on startup via ``app.config.from_pyfile(...)``; code
outside a request (pipeline stages, the reconciler, CLI jobs) reads
``SETTINGS`` directly through ``get_setting``.

Secrets (registry API keys, object storage credentials) come from the
environment; everything else has a working default.
"""

import os


def _env(name: str, default: str | None = None, *fallbacks: str) -> str | None:
    for key in (name, *fallbacks):
        v = os.getenv(key)
        if v is not None and v.strip():
            return v.strip()
    return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env(name) or default)
    except ValueError:
        return default


# Single source of truth for app configuration.
SETTINGS: dict[str, object] = {
    # Flask
    "SECRET_KEY": _env("SECRET_KEY", "dev-not-secret"),
    # Logging
    "LOG_LEVEL": _env("LOG_LEVEL", "INFO"),
    # Matching thresholds (Dice similarity on normalized names, 0..1)
    "MATCH_AUTO_APPLY_THRESHOLD": _env_float("MATCH_AUTO_APPLY_THRESHOLD", 0.9),
    "MATCH_MIN_THRESHOLD": _env_float("MATCH_MIN_THRESHOLD", 0.5),
    # Two auto-apply candidates closer than this, both already on file, need a human.
    "MATCH_AMBIGUITY_MARGIN": 0.02,
    "MATCH_DEFAULT_LIMIT": 100,
    "MATCH_PROGRESS_EVERY": 50,
    # Background reconciler
    "RECONCILER_INTERVAL_SECONDS": _env_float("RECONCILER_INTERVAL_SECONDS", 30.0),
    "RECONCILER_BATCH_SIZE": int(_env_float("RECONCILER_BATCH_SIZE", 20)),
    # Import
    "IMPORT_SPEND_BATCH_SIZE": 1000,
    "IMPORT_MAX_WARNINGS": 25,
    # Companies House
    "COMPANIES_HOUSE_BASE_URL": "https://api.company-information.service.gov.uk",
    "COMPANIES_HOUSE_API_KEY": _env("COMPANIES_HOUSE_API_KEY"),
    "COMPANIES_HOUSE_RATE_LIMIT_SECONDS": _env_float("COMPANIES_HOUSE_RATE_LIMIT_MS", 600) / 1000.0,
    # NHS Organisation Data Service
    "NHS_ODS_BASE_URL": "https://directory.spineservices.nhs.uk/ORD/2-0-0",
    "NHS_ODS_RATE_LIMIT_SECONDS": _env_float("NHS_ODS_RATE_LIMIT_MS", 300) / 1000.0,
    # GOV.UK organisation search (national + local government)
    "GOV_UK_SEARCH_URL": "https://www.gov.uk/api/search.json",
    "GOV_UK_RATE_LIMIT_SECONDS": _env_float("GOV_UK_RATE_LIMIT_MS", 1000) / 1000.0,
    # Optional ONS local authority district CSV (LAD23NM, LAD23CD, ...).
    "LOCAL_GOV_DIRECTORY_CSV": _env("LOCAL_GOV_DIRECTORY_CSV"),
    # postcodes.io
    "POSTCODES_IO_BASE_URL": "https://api.postcodes.io",
    "POSTCODES_IO_RATE_LIMIT_SECONDS": _env_float("POSTCODES_IO_RATE_LIMIT_MS", 300) / 1000.0,
    # Shared HTTP behaviour
    "REGISTRY_USER_AGENT": _env("REGISTRY_USER_AGENT", "spendmatch/0.1 (contact: unset)"),
    "REGISTRY_TIMEOUT_SECONDS": 30.0,
    "REGISTRY_MAX_ATTEMPTS": 4,
    # Object storage (S3-compatible, SigV4 presigned URLs)
    "OBJECT_STORAGE_ENDPOINT": _env("OBJECT_STORAGE_ENDPOINT", None, "S3_ENDPOINT", "AWS_ENDPOINT_URL"),
    "OBJECT_STORAGE_REGION": _env("OBJECT_STORAGE_REGION", "us-east-1", "S3_REGION", "AWS_REGION"),
    "OBJECT_STORAGE_BUCKET": _env("OBJECT_STORAGE_BUCKET", None, "S3_BUCKET"),
    "OBJECT_STORAGE_ACCESS_KEY_ID": _env(
        "OBJECT_STORAGE_ACCESS_KEY_ID", None, "S3_ACCESS_KEY_ID", "AWS_ACCESS_KEY_ID"
    ),
    "OBJECT_STORAGE_SECRET_ACCESS_KEY": _env(
        "OBJECT_STORAGE_SECRET_ACCESS_KEY", None, "S3_SECRET_ACCESS_KEY", "AWS_SECRET_ACCESS_KEY"
    ),
    "UPLOAD_URL_EXPIRES_SECONDS": 15 * 60,
    "DOWNLOAD_URL_EXPIRES_SECONDS": 60,
}


def get_setting(name: str, default: object = None) -> object:
    """Read a setting outside of a Flask app context."""

    value = SETTINGS.get(name)
    return default if value is None else value


# Optional convenience exports (picked up by app.config.from_pyfile).
SECRET_KEY = SETTINGS["SECRET_KEY"]
LOG_LEVEL = SETTINGS["LOG_LEVEL"]
MATCH_AUTO_APPLY_THRESHOLD = SETTINGS["MATCH_AUTO_APPLY_THRESHOLD"]
MATCH_MIN_THRESHOLD = SETTINGS["MATCH_MIN_THRESHOLD"]
