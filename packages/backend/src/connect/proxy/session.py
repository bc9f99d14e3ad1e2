"""Session proxy — keeps tokens out of browser JavaScript.

Learn: The browser never sees a raw token. It POSTs to /api/<method> on
the web server; we forward to the API with the access token (from an
HTTP-only cookie) as a bearer header, and rewrite cookies on the way back.

Per request:

    ParseCookies ──no cookies──────────────────────────┐
         │                                             │
    CheckExpiry ──fresh (exp - 30s > now)──────────────┤
         │ expiring                                    ▼
    RefreshAccessToken ──ok──► new access_token ─► SendUpstream
         │ failed                   cookie             │
         ▼                                             ▼
    error to browser,                  signIn/signUp: InterceptTokens
    original request never sent        signOut:       ClearSession
                                       otherwise:     stream through

The 30 second skew covers network latency so a token can't expire while
the request is in flight.

signOut skips CheckExpiry: it needs no bearer, and a revoked refresh
token must not keep the browser from clearing its cookies.

Cookies are collected during the request and only attached to the one
final response. A failed or abandoned request never commits half of a
cookie update. Two tabs refreshing at once just both get valid tokens;
the last cookie written wins.
"""

import json
import time
from typing import Any, Callable, Optional

import httpx
import structlog
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import Response, StreamingResponse

from connect.auth.access_token import decode_unsafe
from connect.errors import APIErrorCode, error_response

logger = structlog.get_logger()

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"

# Tokens expire on their own (or get revoked); the cookie should outlive them.
TOKEN_COOKIE_MAX_AGE = 60 * 60 * 24 * 365 * 100

EXPIRY_SKEW_SECONDS = 30

REFRESH_PATH = "/account/refreshAccessToken"
SIGN_OUT_PATH = "/account/signOut"
NEW_TOKEN_PATHS = frozenset({"/account/signIn", "/account/signUp"})

# Only these headers cross the proxy, in either direction. Lowercase.
REQUEST_HEADERS = frozenset({"content-type", "content-length", "accept-encoding"})
RESPONSE_HEADERS = frozenset({"content-type", "content-length", "content-encoding"})

# (cookie name, value); a None value deletes the cookie.
CookieUpdate = tuple[str, Optional[str]]


class ProxyAbort(Exception):
    """Stop proxying and send `response` to the browser as-is."""

    def __init__(self, response: Response):
        super().__init__(response.status_code)
        self.response = response


def _unknown_error() -> ProxyAbort:
    return ProxyAbort(error_response(APIErrorCode.UNKNOWN))


def _parse_envelope(upstream: httpx.Response, path: str) -> dict[str, Any]:
    """Parse a buffered upstream body as an API envelope."""
    try:
        result = upstream.json()
    except ValueError:
        logger.warning("connect.proxy.malformed_response", path=path, status=upstream.status_code)
        raise _unknown_error()
    if not isinstance(result, dict) or not isinstance(result.get("ok"), bool):
        logger.warning("connect.proxy.malformed_response", path=path, status=upstream.status_code)
        raise _unknown_error()
    return result


def _passthrough(upstream: httpx.Response) -> Response:
    """Send a buffered upstream JSON body to the browser unchanged."""
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        media_type="application/json",
    )


class SessionProxy:
    """Forwards browser API calls upstream, managing token cookies."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        secure_cookies: bool,
        cookie_path: str = "/api",
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.secure_cookies = secure_cookies
        self.cookie_path = cookie_path
        self.clock = clock

    async def handle(self, request: Request, method_path: str) -> Response:
        """Proxy one browser request to the API method at `method_path`."""
        path = "/" + method_path.lstrip("/")
        cookies: list[CookieUpdate] = []

        access_token, refresh_token = self._read_cookies(request)
        try:
            if path != SIGN_OUT_PATH and self._needs_refresh(access_token, refresh_token):
                access_token = await self._refresh_access_token(refresh_token)
                cookies.append((ACCESS_TOKEN_COOKIE, access_token))
            response = await self._send(request, path, access_token, refresh_token, cookies)
        except ProxyAbort as abort:
            return abort.response
        except httpx.HTTPError as e:
            logger.warning("connect.proxy.upstream_error", path=path, error=repr(e))
            return error_response(APIErrorCode.UNKNOWN)

        for name, value in cookies:
            self._write_cookie(response, name, value)
        return response

    # ─── Cookies ─────────────────────────────────────────

    @staticmethod
    def _read_cookies(request: Request) -> tuple[Optional[str], Optional[str]]:
        if "cookie" not in request.headers:
            return None, None
        cookies = request.cookies
        return cookies.get(ACCESS_TOKEN_COOKIE) or None, cookies.get(REFRESH_TOKEN_COOKIE) or None

    def _write_cookie(self, response: Response, name: str, value: Optional[str]) -> None:
        if value is None:
            response.delete_cookie(
                name,
                path=self.cookie_path,
                secure=self.secure_cookies,
                httponly=True,
                samesite="strict",
            )
        else:
            response.set_cookie(
                name,
                value,
                max_age=TOKEN_COOKIE_MAX_AGE,
                path=self.cookie_path,
                secure=self.secure_cookies,
                httponly=True,
                samesite="strict",
            )

    # ─── Refresh ─────────────────────────────────────────

    def _needs_refresh(self, access_token: Optional[str], refresh_token: Optional[str]) -> bool:
        if refresh_token is None:
            # Nothing to refresh with; let the API judge the access token.
            return False
        if access_token is None:
            return True
        data = decode_unsafe(access_token)
        if data is None or data.expires_at is None:
            return True
        return self.clock() >= data.expires_at - EXPIRY_SKEW_SECONDS

    async def _refresh_access_token(self, refresh_token: str) -> str:
        """Trade the refresh token for a new access token or abort the request."""
        upstream = await self.client.post(REFRESH_PATH, json={"refreshToken": refresh_token})
        result = _parse_envelope(upstream, REFRESH_PATH)

        if not result["ok"]:
            # Revoked or unknown refresh token: the browser has to sign in again.
            logger.info("connect.proxy.refresh_rejected", status=upstream.status_code)
            raise ProxyAbort(_passthrough(upstream))

        data = result.get("data")
        access_token = data.get("accessToken") if isinstance(data, dict) else None
        if not isinstance(access_token, str) or not access_token:
            logger.warning("connect.proxy.malformed_response", path=REFRESH_PATH)
            raise _unknown_error()

        logger.debug("connect.proxy.refreshed")
        return access_token

    # ─── Upstream ────────────────────────────────────────

    async def _send(
        self,
        request: Request,
        path: str,
        access_token: Optional[str],
        refresh_token: Optional[str],
        cookies: list[CookieUpdate],
    ) -> Response:
        headers = {k: v for k, v in request.headers.items() if k.lower() in REQUEST_HEADERS}
        if access_token is not None:
            headers["authorization"] = f"Bearer {access_token}"

        # httpx would otherwise advertise its own encodings on the browser's behalf.
        headers.setdefault("accept-encoding", "identity")
        if path in NEW_TOKEN_PATHS:
            # We rewrite this body, so it must come back uncompressed.
            headers["accept-encoding"] = "identity"

        if path == SIGN_OUT_PATH:
            # The browser can't know its refresh token; supply it from the cookie.
            content: Any = json.dumps({"refreshToken": refresh_token or ""}).encode("utf-8")
            headers["content-type"] = "application/json"
            headers["content-length"] = str(len(content))
        else:
            content = request.stream()

        upstream_request = self.client.build_request(
            request.method, path, headers=headers, content=content
        )
        upstream = await self.client.send(upstream_request, stream=True)

        if path in NEW_TOKEN_PATHS:
            await self._buffer(upstream)
            return self._intercept_tokens(upstream, path, cookies)
        if path == SIGN_OUT_PATH:
            await self._buffer(upstream)
            return self._clear_session(upstream, path, cookies)

        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers={
                k: v for k, v in upstream.headers.items() if k.lower() in RESPONSE_HEADERS
            },
            background=BackgroundTask(upstream.aclose),
        )

    @staticmethod
    async def _buffer(upstream: httpx.Response) -> None:
        try:
            await upstream.aread()
        finally:
            await upstream.aclose()

    def _intercept_tokens(
        self,
        upstream: httpx.Response,
        path: str,
        cookies: list[CookieUpdate],
    ) -> Response:
        """Move sign-in/sign-up tokens from the body into cookies."""
        result = _parse_envelope(upstream, path)
        if not result["ok"]:
            return _passthrough(upstream)

        data = result.get("data")
        if not isinstance(data, dict):
            raise _unknown_error()
        refresh_token = data.get("refreshToken")
        access_token = data.get("accessToken")
        if not isinstance(refresh_token, str) or not isinstance(access_token, str):
            logger.warning("connect.proxy.malformed_response", path=path)
            raise _unknown_error()

        cookies.append((REFRESH_TOKEN_COOKIE, refresh_token))
        cookies.append((ACCESS_TOKEN_COOKIE, access_token))

        body = {"ok": True, "data": {**data, "refreshToken": "", "accessToken": ""}}
        return Response(
            content=json.dumps(body),
            status_code=200,
            media_type="application/json",
        )

    def _clear_session(
        self,
        upstream: httpx.Response,
        path: str,
        cookies: list[CookieUpdate],
    ) -> Response:
        """Drop both cookies once the API has revoked the refresh token."""
        result = _parse_envelope(upstream, path)
        if result["ok"]:
            cookies.append((REFRESH_TOKEN_COOKIE, None))
            cookies.append((ACCESS_TOKEN_COOKIE, None))
        return _passthrough(upstream)
