"""Refresh token ledger — issue, resolve, revoke.

Learn: A refresh token is the durable anchor of a session. Access tokens
expire after an hour; the refresh token lives until the user signs out,
and trading it in at /account/refreshAccessToken mints a fresh access token.

Tokens are opaque ids from connect.ids. They carry no claims, so the only
way to learn which account one belongs to is to look it up here, and
deleting the row revokes it for good.

resolve() does NOT consume the token. The same refresh token works for
every silent refresh until it is revoked.
"""

from abc import ABC, abstractmethod
from typing import Optional

import structlog
from sqlalchemy import delete, insert, select

from connect.auth.access_token import AccountID
from connect.db.context import ContextUnauthorized
from connect.db.models import RefreshToken
from connect.ids import generate_id

logger = structlog.get_logger()


class RefreshTokenLedger(ABC):
    """The contract every refresh token store honours."""

    @abstractmethod
    async def issue(self, account_id: AccountID) -> str:
        """Mint a new token bound to `account_id`."""

    @abstractmethod
    async def resolve(self, token: str) -> Optional[AccountID]:
        """The account a live token is bound to, or None. Non-consuming."""

    @abstractmethod
    async def revoke(self, token: str) -> None:
        """Forget `token`. Revoking an unknown token is not an error."""


class InMemoryRefreshTokenLedger(RefreshTokenLedger):
    """Dict-backed ledger for tests and single-process development."""

    def __init__(self):
        self._tokens: dict[str, AccountID] = {}

    async def issue(self, account_id: AccountID) -> str:
        token = generate_id()
        self._tokens[token] = account_id
        return token

    async def resolve(self, token: str) -> Optional[AccountID]:
        return self._tokens.get(token)

    async def revoke(self, token: str) -> None:
        self._tokens.pop(token, None)

    def __len__(self) -> int:
        return len(self._tokens)


class SQLRefreshTokenLedger(RefreshTokenLedger):
    """Ledger persisted in the refresh_token table through a request context."""

    def __init__(self, ctx: ContextUnauthorized):
        self.ctx = ctx

    async def issue(self, account_id: AccountID) -> str:
        token = generate_id()
        await self.ctx.query(
            insert(RefreshToken).values(token=token, account_id=account_id)
        )
        logger.info("connect.refresh_token.issued", account_id=account_id)
        return token

    async def resolve(self, token: str) -> Optional[AccountID]:
        result = await self.ctx.query(
            select(RefreshToken.account_id).where(RefreshToken.token == token)
        )
        return result.scalar_one_or_none()

    async def revoke(self, token: str) -> None:
        await self.ctx.query(delete(RefreshToken).where(RefreshToken.token == token))
        logger.info("connect.refresh_token.revoked")
