"""Session proxy tests — refresh, cookie rewriting, header filtering.

Learn: The API is played by an httpx.MockTransport, so these tests see
exactly what the proxy sends upstream. The browser is an httpx client on
an ASGITransport in front of the proxy app, sending raw Cookie headers.
"""

import json
from contextlib import asynccontextmanager
from datetime import timedelta

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from connect.auth.access_token import AccessTokenCodec, AccessTokenData
from connect.proxy.app import create_proxy_app, get_proxy
from connect.proxy.session import SessionProxy

from conftest import TEST_SECRET

REFRESH = "/account/refreshAccessToken"


class UpstreamStream(httpx.AsyncByteStream):
    """A body httpx hasn't read yet, like one off a real socket."""

    def __init__(self, body: bytes):
        self.body = body

    async def __aiter__(self):
        yield self.body


class FakeAPI:
    """Records upstream requests and answers per path.

    Learn: httpx reads a Response built from json=/content= at once, and
    the proxy streams pass-through bodies with aiter_raw(). Answers are
    re-wrapped in an UpstreamStream so they stay unread until the proxy
    reads them.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            answer = httpx.Response(200, json={"ok": True, "data": {"echo": request.url.path}})
        else:
            answer = handler(request)
        return httpx.Response(
            answer.status_code,
            headers=answer.headers,
            stream=UpstreamStream(answer.content),
        )

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture()
def fake_api():
    api = FakeAPI()
    api.routes[REFRESH] = lambda request: httpx.Response(
        200, json={"ok": True, "data": {"accessToken": "fresh-access-token"}}
    )
    return api


@asynccontextmanager
async def browser(fake_api: FakeAPI, secure_cookies: bool = True):
    upstream = httpx.AsyncClient(
        transport=httpx.MockTransport(fake_api), base_url="http://api.test"
    )
    app = create_proxy_app()
    app.dependency_overrides[get_proxy] = lambda: SessionProxy(
        upstream, secure_cookies=secure_cookies, cookie_path="/api"
    )
    async with upstream:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://web.test") as ac:
            yield ac


def _token(ttl: timedelta) -> str:
    return AccessTokenCodec(TEST_SECRET, ttl=ttl).issue(AccessTokenData(account_id=1))


def _cookie(access=None, refresh=None) -> dict:
    parts = []
    if access is not None:
        parts.append(f"access_token={access}")
    if refresh is not None:
        parts.append(f"refresh_token={refresh}")
    return {"Cookie": "; ".join(parts)}


def _set_cookies(r: httpx.Response) -> dict[str, str]:
    return {c.split("=", 1)[0]: c for c in r.headers.get_list("set-cookie")}


# ═══════════════════════════════════════════════════════════
# Refresh before forwarding
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_once(fake_api):
    async with browser(fake_api) as b:
        r = await b.post(
            "/api/post/list",
            json={"page": 1},
            headers=_cookie(access=_token(timedelta(seconds=10)), refresh="r1"),
        )

    assert r.status_code == 200
    assert r.json() == {"ok": True, "data": {"echo": "/post/list"}}

    refreshes = fake_api.calls(REFRESH)
    assert len(refreshes) == 1
    assert json.loads(refreshes[0].content) == {"refreshToken": "r1"}

    forwarded = fake_api.calls("/post/list")
    assert len(forwarded) == 1
    assert forwarded[0].headers["authorization"] == "Bearer fresh-access-token"
    assert json.loads(forwarded[0].content) == {"page": 1}

    cookies = _set_cookies(r)
    assert list(cookies) == ["access_token"]
    assert cookies["access_token"].startswith("access_token=fresh-access-token;")


@pytest.mark.asyncio
async def test_fresh_token_is_not_refreshed(fake_api):
    token = _token(timedelta(minutes=5))
    async with browser(fake_api) as b:
        r = await b.post("/api/post/list", json={}, headers=_cookie(access=token, refresh="r1"))

    assert r.status_code == 200
    assert fake_api.calls(REFRESH) == []
    assert fake_api.calls("/post/list")[0].headers["authorization"] == f"Bearer {token}"
    assert r.headers.get_list("set-cookie") == []


@pytest.mark.asyncio
async def test_missing_access_token_with_refresh_token_refreshes(fake_api):
    async with browser(fake_api) as b:
        await b.post("/api/post/list", json={}, headers=_cookie(refresh="r1"))

    assert len(fake_api.calls(REFRESH)) == 1
    assert fake_api.calls("/post/list")[0].headers["authorization"] == "Bearer fresh-access-token"


@pytest.mark.asyncio
async def test_expired_token_without_refresh_token_is_sent_as_is(fake_api):
    token = _token(timedelta(seconds=-60))
    async with browser(fake_api) as b:
        await b.post("/api/post/list", json={}, headers=_cookie(access=token))

    assert fake_api.calls(REFRESH) == []
    assert fake_api.calls("/post/list")[0].headers["authorization"] == f"Bearer {token}"


@pytest.mark.asyncio
async def test_no_cookies_means_no_bearer(fake_api):
    async with browser(fake_api) as b:
        r = await b.post("/api/account/getCurrentAccount", json={})

    assert r.status_code == 200
    assert fake_api.calls(REFRESH) == []
    assert "authorization" not in fake_api.requests[0].headers


@pytest.mark.asyncio
async def test_rejected_refresh_goes_to_browser(fake_api):
    fake_api.routes[REFRESH] = lambda request: httpx.Response(
        401, json={"ok": False, "error": {"code": "UNAUTHORIZED"}}
    )
    async with browser(fake_api) as b:
        r = await b.post(
            "/api/post/list",
            json={},
            headers=_cookie(access=_token(timedelta(seconds=5)), refresh="revoked"),
        )

    assert r.status_code == 401
    assert r.json() == {"ok": False, "error": {"code": "UNAUTHORIZED"}}
    # The original request never went out, and no cookie was touched
    assert fake_api.calls("/post/list") == []
    assert r.headers.get_list("set-cookie") == []


@pytest.mark.asyncio
async def test_malformed_refresh_response_is_unknown(fake_api):
    fake_api.routes[REFRESH] = lambda request: httpx.Response(200, text="<html>oops</html>")
    async with browser(fake_api) as b:
        r = await b.post("/api/post/list", json={}, headers=_cookie(refresh="r1"))

    assert r.status_code == 500
    assert r.json() == {"ok": False, "error": {"code": "UNKNOWN"}}
    assert fake_api.calls("/post/list") == []


@pytest.mark.asyncio
async def test_upstream_unreachable_is_unknown(fake_api):
    def down(request):
        raise httpx.ConnectError("connection refused", request=request)

    fake_api.routes["/post/list"] = down
    async with browser(fake_api) as b:
        r = await b.post("/api/post/list", json={})

    assert r.status_code == 500
    assert r.json() == {"ok": False, "error": {"code": "UNKNOWN"}}


# ═══════════════════════════════════════════════════════════
# Sign in / sign up / sign out
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["signIn", "signUp"])
async def test_new_tokens_move_into_cookies(fake_api, method):
    fake_api.routes[f"/account/{method}"] = lambda request: httpx.Response(
        200, json={"ok": True, "data": {"accessToken": "a1", "refreshToken": "r1"}}
    )
    async with browser(fake_api) as b:
        r = await b.post(
            f"/api/account/{method}",
            json={"email": "a@example.com", "password": "password_123"},
            headers={"Accept-Encoding": "gzip"},
        )

    assert r.status_code == 200
    assert r.json() == {"ok": True, "data": {"accessToken": "", "refreshToken": ""}}
    # We rewrite this body, so it must arrive uncompressed
    assert fake_api.requests[0].headers["accept-encoding"] == "identity"

    cookies = r.headers.get_list("set-cookie")
    assert [c.split("=", 1)[0] for c in cookies] == ["refresh_token", "access_token"]
    for cookie, value in zip(cookies, ["r1", "a1"]):
        lowered = cookie.lower()
        assert cookie.split(";", 1)[0].endswith(f"={value}")
        assert "httponly" in lowered
        assert "samesite=strict" in lowered
        assert "path=/api" in lowered
        assert "secure" in lowered
        assert "max-age=3153600000" in lowered


@pytest.mark.asyncio
async def test_sign_in_error_is_forwarded(fake_api):
    fake_api.routes["/account/signIn"] = lambda request: httpx.Response(
        401, json={"ok": False, "error": {"code": "SIGN_IN_INCORRECT_CREDENTIALS"}}
    )
    async with browser(fake_api) as b:
        r = await b.post("/api/account/signIn", json={"email": "a@example.com", "password": "x"})

    assert r.status_code == 401
    assert r.json() == {"ok": False, "error": {"code": "SIGN_IN_INCORRECT_CREDENTIALS"}}
    assert r.headers.get_list("set-cookie") == []


@pytest.mark.asyncio
async def test_sign_in_malformed_body_is_unknown(fake_api):
    fake_api.routes["/account/signIn"] = lambda request: httpx.Response(200, text="not json")
    async with browser(fake_api) as b:
        r = await b.post("/api/account/signIn", json={})

    assert r.status_code == 500
    assert r.json() == {"ok": False, "error": {"code": "UNKNOWN"}}
    assert r.headers.get_list("set-cookie") == []


@pytest.mark.asyncio
async def test_sign_in_missing_tokens_is_unknown(fake_api):
    fake_api.routes["/account/signIn"] = lambda request: httpx.Response(
        200, json={"ok": True, "data": {"accessToken": "a1"}}
    )
    async with browser(fake_api) as b:
        r = await b.post("/api/account/signIn", json={})

    assert r.status_code == 500
    assert r.json()["error"]["code"] == "UNKNOWN"


@pytest.mark.asyncio
async def test_sign_out_supplies_refresh_token_and_clears_cookies(fake_api):
    token = _token(timedelta(minutes=5))
    async with browser(fake_api) as b:
        r = await b.post(
            "/api/account/signOut", json={}, headers=_cookie(access=token, refresh="r1")
        )

    assert r.status_code == 200
    sent = fake_api.calls("/account/signOut")[0]
    assert json.loads(sent.content) == {"refreshToken": "r1"}

    cookies = _set_cookies(r)
    assert set(cookies) == {"access_token", "refresh_token"}
    for cookie in cookies.values():
        assert "max-age=0" in cookie.lower()
        assert "path=/api" in cookie.lower()


@pytest.mark.asyncio
async def test_failed_sign_out_keeps_cookies(fake_api):
    fake_api.routes["/account/signOut"] = lambda request: httpx.Response(
        400, json={"ok": False, "error": {"code": "BAD_INPUT"}}
    )
    async with browser(fake_api) as b:
        r = await b.post("/api/account/signOut", json={}, headers=_cookie(refresh="r1"))

    assert r.status_code == 400
    assert r.headers.get_list("set-cookie") == []
    assert fake_api.calls(REFRESH) == []


@pytest.mark.asyncio
async def test_sign_out_with_revoked_refresh_token_still_clears_cookies(fake_api):
    """A session revoked elsewhere can always sign out; no refresh is attempted."""
    fake_api.routes[REFRESH] = lambda request: httpx.Response(
        401, json={"ok": False, "error": {"code": "UNAUTHORIZED"}}
    )
    fake_api.routes["/account/signOut"] = lambda request: httpx.Response(
        200, json={"ok": True, "data": {}}
    )
    async with browser(fake_api) as b:
        r = await b.post(
            "/api/account/signOut",
            json={},
            headers=_cookie(access=_token(timedelta(seconds=-60)), refresh="revoked"),
        )

    assert r.status_code == 200
    assert fake_api.calls(REFRESH) == []
    assert json.loads(fake_api.calls("/account/signOut")[0].content) == {
        "refreshToken": "revoked"
    }
    cookies = _set_cookies(r)
    assert set(cookies) == {"access_token", "refresh_token"}
    assert all("max-age=0" in c.lower() for c in cookies.values())


@pytest.mark.asyncio
async def test_insecure_cookies_in_development(fake_api):
    fake_api.routes["/account/signIn"] = lambda request: httpx.Response(
        200, json={"ok": True, "data": {"accessToken": "a1", "refreshToken": "r1"}}
    )
    async with browser(fake_api, secure_cookies=False) as b:
        r = await b.post("/api/account/signIn", json={})

    cookies = r.headers.get_list("set-cookie")
    assert len(cookies) == 2
    for cookie in cookies:
        assert "secure" not in cookie.lower()
        assert "httponly" in cookie.lower()


# ═══════════════════════════════════════════════════════════
# Header filtering
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_only_allowed_headers_go_upstream(fake_api):
    async with browser(fake_api) as b:
        await b.post(
            "/api/post/list",
            json={},
            headers={
                "Authorization": "Bearer smuggled",
                "X-Forwarded-For": "10.0.0.1",
                "Accept-Encoding": "gzip",
                "Cookie": "theme=dark",
            },
        )

    sent = fake_api.requests[0].headers
    assert "authorization" not in sent
    assert "x-forwarded-for" not in sent
    assert "cookie" not in sent
    assert sent["content-type"] == "application/json"
    assert sent["accept-encoding"] == "gzip"


@pytest.mark.asyncio
async def test_only_allowed_headers_come_back(fake_api):
    fake_api.routes["/post/list"] = lambda request: httpx.Response(
        200,
        json={"ok": True, "data": {}},
        headers={"X-Powered-By": "api", "Set-Cookie": "session=evil"},
    )
    async with browser(fake_api) as b:
        r = await b.post("/api/post/list", json={})

    assert r.status_code == 200
    assert r.json() == {"ok": True, "data": {}}
    assert "x-powered-by" not in r.headers
    assert r.headers.get_list("set-cookie") == []
    assert r.headers["content-type"] == "application/json"


@pytest.mark.asyncio
async def test_upstream_status_is_preserved(fake_api):
    fake_api.routes["/post/get"] = lambda request: httpx.Response(
        404, json={"ok": False, "error": {"code": "NOT_FOUND"}}
    )
    async with browser(fake_api) as b:
        r = await b.post("/api/post/get", json={"id": "x"})

    assert r.status_code == 404
    assert r.json()["error"]["code"] == "NOT_FOUND"
