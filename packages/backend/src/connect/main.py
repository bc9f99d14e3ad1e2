"""FastAPI application factory for the API server.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan configures logging at startup and disposes the engine
(closing pooled connections) at shutdown. Exception handlers turn every
failure into the {"ok": false, "error": {"code": ...}} envelope.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from connect import __version__
from connect.api import api_router
from connect.config import settings
from connect.errors import APIError, APIErrorCode, ProgrammerError, error_response
from connect.logging_config import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    configure_logging(settings)
    logger.info(
        "connect.api.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    yield

    logger.info("connect.api.shutdown")

    from connect.db.engine import engine
    await engine.dispose()


async def handle_api_error(request: Request, exc: APIError):
    return error_response(exc.code, exc.status_code)


async def handle_validation_error(request: Request, exc: RequestValidationError):
    return error_response(APIErrorCode.BAD_INPUT)


async def handle_programmer_error(request: Request, exc: ProgrammerError):
    # A defect, not a user error: shout in the logs, say nothing to the client.
    logger.error(
        "connect.api.programmer_error",
        path=request.url.path,
        error=str(exc),
        exc_info=exc,
    )
    return error_response(APIErrorCode.UNKNOWN)


async def handle_database_error(request: Request, exc: SQLAlchemyError):
    # Includes failed commits: nothing was stored, so nothing is handed out.
    logger.error(
        "connect.api.database_error",
        path=request.url.path,
        error=str(exc),
        exc_info=exc,
    )
    return error_response(APIErrorCode.UNKNOWN)


def create_app() -> FastAPI:
    """Build and return the API server application."""
    app = FastAPI(
        title="Connect API",
        description="Account, token, and request-context core of the Connect API",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Starlette middleware executes in reverse order of registration.
    # Request flow: RequestId → Security → CORS → handler

    from connect.middleware.request_id import RequestIdMiddleware
    from connect.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["POST", "GET"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(APIError, handle_api_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(ProgrammerError, handle_programmer_error)
    app.add_exception_handler(SQLAlchemyError, handle_database_error)

    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: connect.main:app)
app = create_app()
