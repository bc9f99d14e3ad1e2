"""SQLAlchemy ORM models — single source of truth for the auth schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Primary keys are our own 22 character sortable ids (see connect.ids), not
database sequences, so ids never leak how many rows exist.

Row-level security policies (outside this package) read the
`connect.account_id` setting that the authorized request context pins on
each connection.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from connect.ids import ID_LENGTH, generate_id


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Account(Base):
    """A person who can sign in."""

    __tablename__ = "account"

    id: Mapped[str] = mapped_column(
        String(ID_LENGTH), primary_key=True, default=generate_id
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class RefreshToken(Base):
    """A long-lived, revocable credential bound to one account.

    Learn: The token value itself is the primary key. Lookups never
    consume it; only sign-out deletes the row.
    """

    __tablename__ = "refresh_token"
    __table_args__ = (
        Index("idx_refresh_token_account", "account_id"),
    )

    token: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(ID_LENGTH), ForeignKey("account.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
