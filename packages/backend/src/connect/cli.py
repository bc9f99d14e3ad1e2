"""Connect CLI — run the servers and poke at the auth core.

Usage:
    connect api                      # Serve the API (connect.main:app)
    connect proxy                    # Serve the session proxy (connect.proxy.app:app)
    connect init-db                  # Create the account/refresh_token tables
    connect new-id -n 5              # Print freshly generated ids
    connect decode-token <token>     # Show an access token's claims (unverified)
    connect health                   # Ask a running API for its health
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from datetime import datetime, timezone

import click
import httpx

from connect import __version__
from connect.auth.access_token import decode_unsafe
from connect.config import settings
from connect.ids import generate_id


def _api_url() -> str:
    return os.environ.get("CONNECT_API_URL", settings.api_url).rstrip("/")


@click.group()
@click.version_option(version=__version__, prog_name="connect")
def main():
    """Connect — authentication and request-scoping core."""


@main.command()
@click.option("--host", default=settings.host, show_default=True)
@click.option("--port", default=settings.port, show_default=True, type=int)
def api(host: str, port: int):
    """Serve the API server."""
    import uvicorn

    uvicorn.run("connect.main:app", host=host, port=port)


@main.command()
@click.option("--host", default=settings.host, show_default=True)
@click.option("--port", default=settings.proxy_port, show_default=True, type=int)
def proxy(host: str, port: int):
    """Serve the browser-facing session proxy."""
    import uvicorn

    uvicorn.run("connect.proxy.app:app", host=host, port=port)


@main.command("init-db")
def init_db():
    """Create tables for all models (idempotent)."""
    from connect.db.engine import engine
    from connect.db.models import Base

    async def create():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(create())
    click.secho("Tables created.", fg="green")


@main.command("new-id")
@click.option("--count", "-n", default=1, show_default=True, type=int)
def new_id(count: int):
    """Print newly generated ids, one per line."""
    for _ in range(count):
        click.echo(generate_id())


@main.command("decode-token")
@click.argument("token")
def decode_token(token: str):
    """Show an access token's claims WITHOUT verifying its signature."""
    data = decode_unsafe(token)
    if data is None:
        click.secho("Error: not a decodable access token", fg="red", err=True)
        sys.exit(1)

    expires = (
        datetime.fromtimestamp(data.expires_at, tz=timezone.utc).isoformat()
        if data.expires_at is not None
        else None
    )
    click.echo(json.dumps({"account_id": data.account_id, "expires_at": expires}, indent=2))


@main.command()
def health():
    """Check a running API server's health."""
    try:
        r = httpx.get(f"{_api_url()}/health", timeout=10.0)
    except httpx.HTTPError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)

    data = r.json()
    color = "green" if data.get("status") == "healthy" else "yellow"
    click.secho(json.dumps(data, indent=2), fg=color)


if __name__ == "__main__":
    main()
