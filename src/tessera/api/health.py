"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running
and its dependencies (database, Redis) are reachable. The event bus is
required for every state change, so Redis down means degraded.
"""

import structlog
from fastapi import APIRouter
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tessera import __version__
from tessera.db.engine import engine
from tessera.events.bus import get_redis

logger = structlog.get_logger()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    # Check the store
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except (SQLAlchemyError, OSError) as e:
        logger.warning("health.database_unreachable", error=str(e))
        checks["database"] = f"error: {e}"

    # Check Redis (the event bus)
    try:
        await get_redis().ping()
        checks["redis"] = "ok"
    except (RuntimeError, RedisError, OSError) as e:
        checks["redis"] = f"error: {e}"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks}
