import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    """Configure SQLite for concurrent runs, the reconciler and SSE readers."""
    cursor = dbapi_connection.cursor()
    # Wait for locks instead of failing immediately.
    cursor.execute("PRAGMA busy_timeout=5000")
    # Readers are not blocked by writers.
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    # spend_entries -> suppliers/buyers/assets must stay consistent across merges.
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


DB_PATH = os.path.join(os.path.dirname(__file__), "data", "spendmatch.db")
SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{DB_PATH}"


def make_engine(url: str) -> Engine:
    """Create an engine; SQLite URLs get thread-safe connect args and pragmas."""

    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    eng = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_pre_ping=True,
    )
    event.listen(eng, "connect", _set_sqlite_pragmas)
    return eng


if not os.getenv("DATABASE_URL"):
    os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)

engine = make_engine(SQLALCHEMY_DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db() -> None:
    """Create all tables on the current engine (models must be imported)."""

    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
