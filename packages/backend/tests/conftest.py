"""Test fixtures — fake connection pool, in-memory stores, HTTP clients.

Learn: No Postgres needed. Three seams make that work:

1. FakeEngine stands in for the SQLAlchemy async engine. It hands out
   FakeConnections from `begin()`, records every statement, and counts
   checkouts/returns so tests can prove connections always go back.
2. The account API gets its stores from factory dependencies, so `client`
   overrides them with in-memory versions via dependency_overrides. The
   request contexts themselves still run, on the FakeEngine.
3. The session proxy talks to the API through an httpx.AsyncClient, so
   proxy tests give it an httpx.MockTransport that plays the API.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from connect.auth.access_token import AccessTokenCodec, AccountID
from connect.auth.refresh_tokens import InMemoryRefreshTokenLedger
from connect.db.accounts import AccountRecord
from connect.ids import generate_id

TEST_SECRET = "test-secret"


# ─── Fake connection pool ────────────────────────────────


class FakeResult:
    """Just enough of sqlalchemy.engine.Result for our stores."""

    def __init__(self, rows: Optional[list[Any]] = None):
        self.rows = rows or []

    def first(self):
        return self.rows[0] if self.rows else None

    def scalar_one_or_none(self):
        if not self.rows:
            return None
        row = self.rows[0]
        return row[0] if isinstance(row, tuple) else row


class FakeConnection:
    def __init__(self, engine: "FakeEngine"):
        self.engine = engine

    async def execute(self, statement, params=None):
        self.engine.executed.append((statement, params))
        return self.engine.responder(statement, params)

    async def exec_driver_sql(self, sql: str):
        self.engine.driver_sql.append(sql)


class FakeEngine:
    """Counts checkouts and records SQL instead of talking to Postgres."""

    def __init__(self, responder: Optional[Callable[[Any, Any], FakeResult]] = None):
        self.responder = responder or (lambda statement, params: FakeResult())
        self.executed: list[tuple[Any, Any]] = []
        self.driver_sql: list[str] = []
        self.checkouts = 0
        self.returns = 0
        self.commits = 0
        self.rollbacks = 0

    @asynccontextmanager
    async def begin(self):
        self.checkouts += 1
        try:
            yield FakeConnection(self)
            self.commits += 1
        except BaseException:
            self.rollbacks += 1
            raise
        finally:
            self.returns += 1


@pytest.fixture()
def fake_engine():
    return FakeEngine()


# ─── In-memory stores ────────────────────────────────────


@dataclass
class InMemoryAccountStore:
    """Same interface as connect.db.accounts.AccountStore."""

    accounts: dict[str, AccountRecord]

    async def create(self, email: str, password_hash: str) -> Optional[AccountID]:
        if any(a.email == email for a in self.accounts.values()):
            return None
        account_id = generate_id()
        self.accounts[account_id] = AccountRecord(account_id, email, password_hash)
        return account_id

    async def find_by_email(self, email: str) -> Optional[AccountRecord]:
        return next((a for a in self.accounts.values() if a.email == email), None)

    async def get(self, account_id: AccountID) -> Optional[AccountRecord]:
        return self.accounts.get(account_id)


@pytest.fixture()
def account_store():
    return InMemoryAccountStore(accounts={})


@pytest.fixture()
def refresh_ledger():
    return InMemoryRefreshTokenLedger()


@pytest.fixture()
def codec():
    return AccessTokenCodec(TEST_SECRET)


# ─── API server clients ──────────────────────────────────


@pytest_asyncio.fixture()
async def client(account_store, refresh_ledger, codec, fake_engine):
    """HTTP client for the API with stores swapped for in-memory versions.

    Learn: get_accounts/get_refresh_tokens are overridden, but handlers
    still open their request contexts (and authenticate) for real, on
    fake_engine, so tests can count checkouts and see SET LOCAL.
    """
    from connect.auth.dependencies import (
        get_accounts,
        get_codec,
        get_refresh_tokens,
    )
    from connect.db.engine import get_engine
    from connect.main import create_app

    app = create_app()
    app.dependency_overrides[get_accounts] = lambda: lambda ctx: account_store
    app.dependency_overrides[get_refresh_tokens] = lambda: lambda ctx: refresh_ledger
    app.dependency_overrides[get_codec] = lambda: codec
    app.dependency_overrides[get_engine] = lambda: fake_engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
