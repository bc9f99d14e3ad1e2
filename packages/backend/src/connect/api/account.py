"""Account API — sign-up, sign-in, sign-out, token refresh.

Learn: Every method is a POST whose path names the method, and every
response is an envelope ({"ok": true, "data": ...} or an error code):
- POST /account/signUp → create account → access + refresh tokens
- POST /account/signIn → email/password → access + refresh tokens
- POST /account/signOut → revoke a refresh token
- POST /account/refreshAccessToken → refresh token → new access token
- POST /account/getCurrentAccount → who the bearer token belongs to

Each handler does its database work inside one `async with` request
context and only builds the response after the block exits, i.e. after
the transaction committed. Tokens are never handed out for rows that
didn't make it to the database.

Browsers never call these directly. The session proxy sits in front,
moves the tokens into HTTP-only cookies, and blanks them in the body.
"""

from typing import Callable

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncEngine

from connect.auth.access_token import AccessTokenCodec, AccessTokenData, AccountID
from connect.auth.dependencies import (
    authenticate,
    get_accounts,
    get_codec,
    get_refresh_tokens,
)
from connect.auth.password import hash_password_async, verify_password_async
from connect.auth.refresh_tokens import RefreshTokenLedger
from connect.db.accounts import AccountStore
from connect.db.context import ContextUnauthorized, authorized_context, unauthorized_context
from connect.db.engine import get_engine
from connect.errors import APIError, APIErrorCode, ok_envelope

logger = structlog.get_logger()

router = APIRouter(prefix="/account")

AccountsFactory = Callable[[ContextUnauthorized], AccountStore]
LedgerFactory = Callable[[ContextUnauthorized], RefreshTokenLedger]


# ─── Schemas ─────────────────────────────────────────────


class SignUpRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8)


class SignInRequest(BaseModel):
    email: str
    password: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(alias="refreshToken")

    model_config = ConfigDict(populate_by_name=True)


async def _new_session(
    account_id: AccountID,
    refresh_tokens: RefreshTokenLedger,
    codec: AccessTokenCodec,
) -> dict[str, str]:
    refresh_token = await refresh_tokens.issue(account_id)
    access_token = codec.issue(AccessTokenData(account_id=account_id))
    return {"accessToken": access_token, "refreshToken": refresh_token}


# ─── Sign up / sign in ───────────────────────────────────


@router.post("/signUp")
async def sign_up(
    body: SignUpRequest,
    engine: AsyncEngine = Depends(get_engine),
    accounts: AccountsFactory = Depends(get_accounts),
    refresh_tokens: LedgerFactory = Depends(get_refresh_tokens),
    codec: AccessTokenCodec = Depends(get_codec),
):
    """Create a new account and start a session for it."""
    password_hash = await hash_password_async(body.password)

    async with unauthorized_context(engine) as ctx:
        account_id = await accounts(ctx).create(body.email, password_hash)
        if account_id is None:
            raise APIError(APIErrorCode.SIGN_UP_EMAIL_ALREADY_USED)
        session = await _new_session(account_id, refresh_tokens(ctx), codec)

    logger.info("connect.account.signed_up", account_id=account_id)
    return ok_envelope(session)


@router.post("/signIn")
async def sign_in(
    body: SignInRequest,
    engine: AsyncEngine = Depends(get_engine),
    accounts: AccountsFactory = Depends(get_accounts),
    refresh_tokens: LedgerFactory = Depends(get_refresh_tokens),
    codec: AccessTokenCodec = Depends(get_codec),
):
    """Sign in with email and password."""
    async with unauthorized_context(engine) as ctx:
        account = await accounts(ctx).find_by_email(body.email)
        # Same error for unknown email and wrong password
        if account is None or not await verify_password_async(
            body.password, account.password_hash
        ):
            raise APIError(APIErrorCode.SIGN_IN_INCORRECT_CREDENTIALS)
        session = await _new_session(account.id, refresh_tokens(ctx), codec)

    logger.info("connect.account.signed_in", account_id=account.id)
    return ok_envelope(session)


# ─── Tokens ──────────────────────────────────────────────


@router.post("/signOut")
async def sign_out(
    body: RefreshTokenRequest,
    engine: AsyncEngine = Depends(get_engine),
    refresh_tokens: LedgerFactory = Depends(get_refresh_tokens),
):
    """Revoke the refresh token for this device. Idempotent."""
    async with unauthorized_context(engine) as ctx:
        await refresh_tokens(ctx).revoke(body.refresh_token)
    return ok_envelope({})


@router.post("/refreshAccessToken")
async def refresh_access_token(
    body: RefreshTokenRequest,
    engine: AsyncEngine = Depends(get_engine),
    refresh_tokens: LedgerFactory = Depends(get_refresh_tokens),
    codec: AccessTokenCodec = Depends(get_codec),
):
    """Trade a live refresh token for a new access token."""
    async with unauthorized_context(engine) as ctx:
        account_id = await refresh_tokens(ctx).resolve(body.refresh_token)
    if account_id is None:
        raise APIError(APIErrorCode.UNAUTHORIZED, "Unknown or revoked refresh token")

    access_token = codec.issue(AccessTokenData(account_id=account_id))
    return ok_envelope({"accessToken": access_token})


# ─── Current account ─────────────────────────────────────


@router.post("/getCurrentAccount")
async def get_current_account(
    account_id: AccountID = Depends(authenticate),
    engine: AsyncEngine = Depends(get_engine),
    accounts: AccountsFactory = Depends(get_accounts),
):
    """The account the bearer token belongs to."""
    async with authorized_context(account_id, engine) as ctx:
        account = await accounts(ctx).get(account_id)
    if account is None:
        raise APIError(APIErrorCode.NOT_FOUND)
    return ok_envelope({"account": {"id": account.id, "email": account.email}})
