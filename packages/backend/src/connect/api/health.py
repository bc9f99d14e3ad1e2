"""Health check endpoint.

Learn: Runs a trivial query through an unauthorized request context, so a
green check means the pool can hand out connections and take them back.
"""

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from connect import __version__
from connect.db.context import with_unauthorized
from connect.db.engine import get_engine

logger = structlog.get_logger()

router = APIRouter()


@router.get("/health")
async def health_check(engine: AsyncEngine = Depends(get_engine)):
    """Check server health and database connectivity."""
    checks = {"server": "ok", "version": __version__}

    async def ping(ctx):
        await ctx.query(text("SELECT 1"))

    try:
        await with_unauthorized(ping, engine)
        checks["postgres"] = "ok"
    except Exception as e:
        logger.warning("connect.health.postgres_unavailable", error=str(e))
        checks["postgres"] = "error"

    status = "healthy" if checks["postgres"] == "ok" else "degraded"
    return {"status": status, **checks}
