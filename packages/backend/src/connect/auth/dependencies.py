"""FastAPI auth and request-context dependencies.

Learn: These are used as Depends() in route handlers. Handlers open their
request context themselves with `async with unauthorized_context(engine)`
(or authorized_context), so the transaction commits before the response
is built. A yield dependency would commit after the response is sent,
and a failed commit could no longer turn into an error.

Stores are handed out as factories that take the context. Tests
override them with in-memory versions.
"""

from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header

from connect.auth.access_token import (
    AccessTokenCodec,
    AccessTokenUnauthorized,
    AccountID,
    codec_from_settings,
)
from connect.auth.refresh_tokens import RefreshTokenLedger, SQLRefreshTokenLedger
from connect.config import settings
from connect.db.accounts import AccountStore
from connect.db.context import ContextUnauthorized


@lru_cache
def get_codec() -> AccessTokenCodec:
    """The process-wide access token codec."""
    return codec_from_settings(settings)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return None


async def authenticate(
    authorization: Optional[str] = Header(None),
    codec: AccessTokenCodec = Depends(get_codec),
) -> AccountID:
    """Verify the bearer access token and return its account id.

    Raises AccessTokenExpired or AccessTokenUnauthorized, which the app's
    exception handlers turn into error envelopes.
    """
    token = bearer_token(authorization)
    if token is None:
        raise AccessTokenUnauthorized("Authentication required")
    return codec.verify(token).account_id


def get_accounts() -> Callable[[ContextUnauthorized], AccountStore]:
    """Factory for the account store over a request context."""
    return AccountStore


def get_refresh_tokens() -> Callable[[ContextUnauthorized], RefreshTokenLedger]:
    return SQLRefreshTokenLedger
