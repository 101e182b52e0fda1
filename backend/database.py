"""
AskMatch Database Engine
One synchronous SQLAlchemy engine shared by the search pipeline, the API
and the Celery workers. Components open their own `Session(engine)` per
unit of work, so worker threads never share a session.
"""
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from backend.core.config import settings

# Search fans out one index query per statement across worker threads
sync_engine = create_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=settings.match_max_workers + 2,
    max_overflow=10,
    pool_pre_ping=True,
    pool_recycle=3600,
)


def get_engine() -> Engine:
    """
    FastAPI dependency for the shared engine.

    Usage:
        @router.get("/items")
        def list_items(engine: Engine = Depends(get_engine)):
            ...
    """
    return sync_engine


def close_sync_db() -> None:
    """Dispose pooled connections on shutdown."""
    sync_engine.dispose()


def check_db_connection() -> dict[str, Any]:
    """
    Probe the database for readiness checks.

    Returns:
        dict with "status" of "healthy" or "unhealthy".
    """
    try:
        with sync_engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception as e:
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}
    return {"status": "healthy", "database": "connected"}
