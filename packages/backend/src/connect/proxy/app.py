"""FastAPI application factory for the browser-facing session proxy.

Learn: The proxy is its own ASGI app (run next to whatever serves the
web UI). Every POST under `proxy_path` ("/api" by default) is forwarded
to `api_url` with the `/api` prefix stripped.

One httpx.AsyncClient is shared by all requests for the app's lifetime.
It keeps upstream connections alive between requests, capped by
`proxy_max_keepalive`, and is closed at shutdown.
"""

from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import Depends, FastAPI, Request
from starlette.responses import Response

from connect import __version__
from connect.config import settings
from connect.logging_config import configure_logging
from connect.proxy.session import SessionProxy

logger = structlog.get_logger()

KEEPALIVE_EXPIRY_SECONDS = 30.0


def build_upstream_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.api_url,
        timeout=settings.proxy_timeout_seconds,
        limits=httpx.Limits(
            max_keepalive_connections=settings.proxy_max_keepalive,
            keepalive_expiry=KEEPALIVE_EXPIRY_SECONDS,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the shared upstream client at startup, close it at shutdown."""
    configure_logging(settings)
    client = build_upstream_client()
    app.state.proxy = SessionProxy(
        client,
        secure_cookies=not settings.is_development,
        cookie_path=settings.proxy_path,
    )
    logger.info(
        "connect.proxy.starting",
        version=__version__,
        upstream=settings.api_url,
        port=settings.proxy_port,
    )

    yield

    logger.info("connect.proxy.shutdown")
    await client.aclose()


def get_proxy(request: Request) -> SessionProxy:
    """FastAPI dependency — the app's session proxy. Overridden in tests."""
    return request.app.state.proxy


def create_proxy_app() -> FastAPI:
    """Build and return the session proxy application."""
    app = FastAPI(
        title="Connect session proxy",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    from connect.middleware.request_id import RequestIdMiddleware
    from connect.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIdMiddleware)

    @app.post(settings.proxy_path + "/{method_path:path}")
    async def api_proxy(
        method_path: str,
        request: Request,
        proxy: SessionProxy = Depends(get_proxy),
    ) -> Response:
        return await proxy.handle(request, method_path)

    return app


# Default app instance (used by uvicorn: connect.proxy.app:app)
app = create_proxy_app()
