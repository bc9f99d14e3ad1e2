"""Request-scoped database contexts.

Learn: A context wraps exactly one pooled connection (inside one
transaction) for the lifetime of one request action. Two flavours:

- ContextUnauthorized: can run queries, nothing else.
- Context: same, plus `account_id`. Before the action runs we pin
  `SET LOCAL connect.account_id = ...` on the connection so Postgres
  row-level security policies only show that account's rows.

The context is invalidated the moment the action returns or raises, before
the connection goes back to the pool. A context that leaks out of its
action (returned, stashed on an object, captured by a closure) fails
loudly with ProgrammerError on the next query instead of silently running
SQL on a connection some other request now owns.

    async with authorized_context(account_id) as ctx:
        result = await ctx.query(select(Account).where(Account.id == account_id))

    # or, callback style:
    await with_authorized(account_id, load_account)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy.engine import Result
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql.base import Executable

from connect.auth.access_token import AccountID
from connect.db import engine as db_engine
from connect.errors import ProgrammerError
from connect.ids import is_id

logger = structlog.get_logger()

T = TypeVar("T")

ACCOUNT_ID_SETTING = "connect.account_id"


class ContextUnauthorized:
    """Context for an unauthorized request: bare query capability."""

    def __init__(self, connection: AsyncConnection):
        self._connection: Optional[AsyncConnection] = connection
        # One connection, one statement at a time, in issuance order.
        self._lock = asyncio.Lock()

    @property
    def is_live(self) -> bool:
        return self._connection is not None

    async def query(
        self,
        statement: Executable,
        params: Optional[dict[str, Any]] = None,
    ) -> Result:
        """Execute a SQLAlchemy statement with bound parameters.

        Plain strings are refused: build statements with Core constructs or
        `text()` plus params so values are never spliced into SQL.
        """
        if self._connection is None:
            raise ProgrammerError("Cannot query a context after it has been invalidated.")
        if not isinstance(statement, Executable):
            raise ProgrammerError(
                f"Expected a SQLAlchemy statement, got {type(statement).__name__}."
            )

        async with self._lock:
            # Re-check: the action may have returned while we waited.
            if self._connection is None:
                raise ProgrammerError("Cannot query a context after it has been invalidated.")
            logger.debug("connect.db.query", sql=str(statement))
            return await self._connection.execute(statement, params)

    def _invalidate(self) -> None:
        self._connection = None


class Context(ContextUnauthorized):
    """Context for an authorized request, pinned to one account."""

    def __init__(self, connection: AsyncConnection, account_id: AccountID):
        super().__init__(connection)
        self.account_id = account_id


def validate_account_id(account_id: object) -> AccountID:
    """Reject anything that isn't a positive int or a well-formed id.

    This value is rendered straight into a SET LOCAL statement (Postgres
    can't bind parameters there), so this check is the only thing standing
    between it and SQL injection.
    """
    if isinstance(account_id, bool):
        raise ProgrammerError("Expected account id to be an int or id string, got bool.")
    if isinstance(account_id, int):
        if account_id <= 0:
            raise ProgrammerError("Expected account id to be a positive int.")
        return account_id
    if is_id(account_id):
        return account_id
    raise ProgrammerError(
        f"Expected account id to be an int or id string, got {type(account_id).__name__}."
    )


def _scope_statement(account_id: AccountID) -> str:
    if isinstance(account_id, int):
        return f"SET LOCAL {ACCOUNT_ID_SETTING} = {account_id}"
    return f"SET LOCAL {ACCOUNT_ID_SETTING} = '{account_id}'"


def _pool(engine: Optional[AsyncEngine]) -> AsyncEngine:
    return engine if engine is not None else db_engine.engine


@asynccontextmanager
async def unauthorized_context(
    engine: Optional[AsyncEngine] = None,
) -> AsyncIterator[ContextUnauthorized]:
    """Check out a connection and yield an unauthorized context over it."""
    async with _pool(engine).begin() as connection:
        ctx = ContextUnauthorized(connection)
        try:
            yield ctx
        finally:
            ctx._invalidate()


@asynccontextmanager
async def authorized_context(
    account_id: AccountID,
    engine: Optional[AsyncEngine] = None,
) -> AsyncIterator[Context]:
    """Check out a connection, pin the account, and yield an authorized context."""
    account_id = validate_account_id(account_id)
    async with _pool(engine).begin() as connection:
        # Raw driver call: runs on every authorized request, not worth logging.
        await connection.exec_driver_sql(_scope_statement(account_id))
        ctx = Context(connection, account_id)
        try:
            yield ctx
        finally:
            ctx._invalidate()


async def with_unauthorized(
    action: Callable[[ContextUnauthorized], Awaitable[T]],
    engine: Optional[AsyncEngine] = None,
) -> T:
    """Run `action` in an unauthorized context; invalidate it afterwards."""
    async with unauthorized_context(engine) as ctx:
        return await action(ctx)


async def with_authorized(
    account_id: AccountID,
    action: Callable[[Context], Awaitable[T]],
    engine: Optional[AsyncEngine] = None,
) -> T:
    """Run `action` in a context authorized as `account_id`; invalidate it afterwards."""
    async with authorized_context(account_id, engine) as ctx:
        return await action(ctx)
