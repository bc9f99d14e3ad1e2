"""Account store — the rows sign-up creates and sign-in reads."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from connect.auth.access_token import AccountID
from connect.db.context import ContextUnauthorized
from connect.db.models import Account
from connect.ids import generate_id


@dataclass(frozen=True)
class AccountRecord:
    id: AccountID
    email: str
    password_hash: str


class AccountStore:
    """Queries against the account table, run through a request context."""

    def __init__(self, ctx: ContextUnauthorized):
        self.ctx = ctx

    async def create(self, email: str, password_hash: str) -> Optional[AccountID]:
        """Insert a new account. Returns None if the email is already taken.

        Learn: ON CONFLICT DO NOTHING + RETURNING makes "email in use" a
        normal empty result instead of a unique-violation exception, and
        there's no race between a check and the insert.
        """
        stmt = (
            pg_insert(Account)
            .values(id=generate_id(), email=email, password_hash=password_hash)
            .on_conflict_do_nothing(index_elements=[Account.email])
            .returning(Account.id)
        )
        result = await self.ctx.query(stmt)
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> Optional[AccountRecord]:
        result = await self.ctx.query(
            select(Account.id, Account.email, Account.password_hash).where(
                Account.email == email
            )
        )
        row = result.first()
        if row is None:
            return None
        return AccountRecord(id=row.id, email=row.email, password_hash=row.password_hash)

    async def get(self, account_id: AccountID) -> Optional[AccountRecord]:
        result = await self.ctx.query(
            select(Account.id, Account.email, Account.password_hash).where(
                Account.id == account_id
            )
        )
        row = result.first()
        if row is None:
            return None
        return AccountRecord(id=row.id, email=row.email, password_hash=row.password_hash)
