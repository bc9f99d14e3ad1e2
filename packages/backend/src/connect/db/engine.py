"""Async SQLAlchemy engine — the connection pool collaborator.

Learn: create_async_engine owns the pool (asyncpg underneath). Nothing in
the app checks connections out directly; the request context in
context.py is the only code that leases one, and it always gives it back.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from connect.config import settings

# echo=True in dev to see SQL queries.
engine: AsyncEngine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
)


def get_engine() -> AsyncEngine:
    """FastAPI dependency — the process-wide engine. Overridden in tests."""
    return engine
