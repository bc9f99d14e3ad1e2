"""Access token signing and verification.

Learn: An access token is an HS256 JWT carrying the account id plus
`iat`/`exp`. It lives for exactly one hour. That short window bounds the
damage of a stolen access token; the long-lived credential is the refresh
token (see refresh_tokens.py), which can be revoked.

Verification distinguishes two failures:
- AccessTokenExpired: signature checks out but `exp` has passed. The
  session proxy recovers from this by refreshing.
- AccessTokenUnauthorized: anything else (bad signature, garbage, wrong
  key, missing claims). Terminal for the request.

PyJWT checks the signature before the claims, so a tampered token that is
also expired reports Unauthorized, never Expired.

**Danger:** every token issue() produces is trusted. Only call it after
proving the caller owns the account (password check or valid refresh token).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

import jwt

from connect.config import Settings
from connect.errors import APIError, APIErrorCode

AccountID = Union[int, str]

ACCESS_TOKEN_TTL = timedelta(hours=1)


@dataclass(frozen=True)
class AccessTokenData:
    """The authenticated principal carried in an access token."""

    account_id: AccountID
    # Unix seconds. Only set when read back from a token.
    expires_at: Optional[int] = field(default=None, compare=False)


class AccessTokenError(APIError):
    """Base for access token verification failures."""


class AccessTokenExpired(AccessTokenError):
    def __init__(self):
        super().__init__(APIErrorCode.ACCESS_TOKEN_EXPIRED, "Access token has expired")


class AccessTokenUnauthorized(AccessTokenError):
    def __init__(self, reason: str = "Invalid access token"):
        super().__init__(APIErrorCode.UNAUTHORIZED, reason)


def _data_from_claims(claims: dict) -> Optional[AccessTokenData]:
    account_id = claims.get("id")
    if isinstance(account_id, bool) or not isinstance(account_id, (int, str)):
        return None
    exp = claims.get("exp")
    return AccessTokenData(
        account_id=account_id,
        expires_at=int(exp) if isinstance(exp, (int, float)) else None,
    )


def decode_unsafe(token: str) -> Optional[AccessTokenData]:
    """Decode claims WITHOUT checking the signature or expiry.

    Only for callers that never act on the claimed account id, like the
    session proxy peeking at `exp` to decide whether to refresh.
    Returns None for anything that isn't a decodable token.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    if not isinstance(claims, dict):
        return None
    return _data_from_claims(claims)


class AccessTokenCodec:
    """Issues and verifies access tokens with an explicitly supplied secret."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        ttl: timedelta = ACCESS_TOKEN_TTL,
    ):
        if not secret:
            raise ValueError("Access token secret is not configured")
        self._secret = secret
        self.algorithm = algorithm
        self.ttl = ttl

    def issue(self, data: AccessTokenData) -> str:
        """Sign `data` into a token valid for `ttl` from now."""
        now = datetime.now(timezone.utc)
        payload = {
            "id": data.account_id,
            "iat": now,
            "exp": now + self.ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> AccessTokenData:
        """Verify signature and expiry, returning the token's data.

        Raises AccessTokenExpired or AccessTokenUnauthorized.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            raise AccessTokenExpired()
        except jwt.InvalidTokenError as e:
            raise AccessTokenUnauthorized(f"Invalid access token: {e}")

        data = _data_from_claims(claims)
        if data is None:
            raise AccessTokenUnauthorized("Access token has no account id")
        return data

    def decode_unsafe(self, token: str) -> Optional[AccessTokenData]:
        return decode_unsafe(token)


def codec_from_settings(settings: Settings) -> AccessTokenCodec:
    """Build the process-wide codec from loaded settings."""
    return AccessTokenCodec(settings.jwt_secret, algorithm=settings.jwt_algorithm)
