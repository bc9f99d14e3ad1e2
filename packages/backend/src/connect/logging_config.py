"""structlog configuration shared by the API server and the session proxy.

Learn: Every module grabs `structlog.get_logger()` and logs dotted event
names ("connect.proxy.refresh_failed") with keyword context. The request-id
middleware binds `request_id` into contextvars, and merge_contextvars below
stamps it onto every entry logged while that request is in flight.
"""

import logging

import structlog

from connect.config import Settings


def configure_logging(settings: Settings) -> None:
    """Configure structlog once at app startup."""
    level = logging.DEBUG if settings.debug else logging.INFO

    if settings.log_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
