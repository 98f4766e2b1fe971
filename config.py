import logging
import os


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    v = (os.getenv(name) or "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        return default


class Config:
    """Base configuration loaded from environment variables."""

    SECRET_KEY = os.getenv("SECRET_KEY", "dev-not-secret")

    # db.py reads the same variable; defaults to data/spendmatch.db
    DATABASE_URL = os.getenv("DATABASE_URL")

    # Feature flags
    ENABLE_ADMIN: bool = _env_bool("ENABLE_ADMIN", True)
    ENABLE_BACKGROUND_RECONCILER: bool = _env_bool("ENABLE_BACKGROUND_RECONCILER", False)
    INIT_DB_ON_STARTUP: bool = _env_bool("INIT_DB_ON_STARTUP", False)

    # Requests slower than this are logged (0 disables).
    SLOW_REQUEST_MS: int = _env_int("SLOW_REQUEST_MS", 250)

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(app_logger: logging.Logger, level_name: str) -> None:
    """Configure Flask's own logger in a simple, predictable way."""

    level = getattr(logging, level_name, logging.INFO)

    # Avoid duplicate handlers (e.g., in tests or reload scenarios)
    if app_logger.handlers:
        app_logger.setLevel(level)
        return

    handler = logging.StreamHandler()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    handler.setFormatter(formatter)

    app_logger.addHandler(handler)
    app_logger.setLevel(level)
