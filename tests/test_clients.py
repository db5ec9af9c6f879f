"""Tests for the platform HTTP clients."""

import httpx
import pytest

from platform_sessions.clients import (
    MarketInOutClient,
    PlatformClient,
    TradingViewClient,
    detect_platform,
)
from platform_sessions.clients.marketinout import looks_like_login_page, parse_watchlists
from platform_sessions.errors import Platform, PlatformHTTPError
from platform_sessions.models import PlatformSessionRecord

WATCHLIST_PAGE = """
<html><body>
<form action="/wl/watch_list.php">
<select name="wlid" id="sel_wlid">
  <option value="101">Tech</option>
  <option value="102" selected>Energy &amp; Oil</option>
  <option value="">-- none --</option>
</select>
</form>
</body></html>
"""

LOGIN_PAGE = "<html><form><input name='email'><input name='password'>Sign in</form></html>"

MIO_RECORD = PlatformSessionRecord(session_id="ASPSESSIONIDABC=xyz", extra={"pref": "dark"})
TV_RECORD = PlatformSessionRecord(session_id="tv-token")


def mio_client(handler) -> MarketInOutClient:
    return MarketInOutClient(
        "https://www.marketinout.com", 1.0, transport=httpx.MockTransport(handler)
    )


def tv_client(handler) -> TradingViewClient:
    return TradingViewClient(
        "https://www.tradingview.com", 1.0, transport=httpx.MockTransport(handler)
    )


def test_parse_watchlists():
    watchlists = parse_watchlists(WATCHLIST_PAGE)

    assert [(w.id, w.name) for w in watchlists] == [("101", "Tech"), ("102", "Energy & Oil")]
    assert parse_watchlists("<html></html>") == []


def test_looks_like_login_page():
    assert looks_like_login_page(LOGIN_PAGE)
    assert not looks_like_login_page(WATCHLIST_PAGE)


@pytest.mark.parametrize(
    "url,session_key,expected",
    [
        ("https://www.marketinout.com/wl/", None, Platform.MARKETINOUT),
        ("https://www.tradingview.com/chart/", None, Platform.TRADINGVIEW),
        (None, "ASPSESSIONIDAB", Platform.MARKETINOUT),
        (None, "sessionid", Platform.TRADINGVIEW),
        (None, "tvshow", Platform.UNKNOWN),
        (None, "MYASPCOOKIE", Platform.UNKNOWN),
        (None, "ASPSESSION", Platform.UNKNOWN),
        ("https://example.com/", "PHPSESSID", Platform.UNKNOWN),
        (None, None, Platform.UNKNOWN),
    ],
)
def test_detect_platform(url, session_key, expected):
    assert detect_platform(url, session_key) == expected


@pytest.mark.asyncio
async def test_clients_satisfy_protocol():
    client = mio_client(lambda request: httpx.Response(200))
    try:
        assert isinstance(client, PlatformClient)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_marketinout_lists_watchlists_with_session_cookie():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=WATCHLIST_PAGE)

    client = mio_client(handler)
    try:
        watchlists = await client.list_watchlists(MIO_RECORD)
        assert await client.probe(MIO_RECORD) is True
    finally:
        await client.close()

    assert [w.id for w in watchlists] == ["101", "102"]
    request = seen[0]
    assert request.url.path == "/wl/watch_list.php"
    assert request.url.params["mode"] == "list"
    assert "ASPSESSIONIDABC=xyz" in request.headers["cookie"]
    assert "pref=dark" in request.headers["cookie"]
    assert "Mozilla" in request.headers["user-agent"]


@pytest.mark.asyncio
async def test_marketinout_login_redirect_is_unauthorized():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"Location": "/login.php?ref=wl"})

    client = mio_client(handler)
    try:
        with pytest.raises(PlatformHTTPError) as exc_info:
            await client.probe(MIO_RECORD)
    finally:
        await client.close()

    assert exc_info.value.status == 401


@pytest.mark.asyncio
async def test_marketinout_login_page_is_unauthorized():
    client = mio_client(lambda request: httpx.Response(200, text=LOGIN_PAGE))
    try:
        with pytest.raises(PlatformHTTPError) as exc_info:
            await client.list_watchlists(MIO_RECORD)
    finally:
        await client.close()

    assert exc_info.value.status == 401


@pytest.mark.asyncio
async def test_marketinout_error_status():
    client = mio_client(lambda request: httpx.Response(500))
    try:
        with pytest.raises(PlatformHTTPError) as exc_info:
            await client.list_watchlists(MIO_RECORD)
    finally:
        await client.close()

    assert exc_info.value.status == 500
    assert exc_info.value.url.startswith("https://www.marketinout.com/wl/watch_list.php")


@pytest.mark.asyncio
async def test_marketinout_refresh_accepts_plain_redirect():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "HEAD"
        return httpx.Response(302, headers={"Location": "/home.php"})

    client = mio_client(handler)
    try:
        assert await client.refresh(MIO_RECORD) is True
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_record_without_session_cookie_is_unauthorized():
    client = mio_client(lambda request: httpx.Response(200, text=WATCHLIST_PAGE))
    try:
        with pytest.raises(PlatformHTTPError) as exc_info:
            await client.probe(PlatformSessionRecord(session_id=""))
    finally:
        await client.close()

    assert exc_info.value.status == 401


@pytest.mark.asyncio
async def test_tradingview_probe():
    responses = iter([{"id": 42, "username": "trader"}, {}])

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/user/"
        assert request.headers["cookie"] == "sessionid=tv-token"
        assert request.headers["accept"] == "application/json"
        return httpx.Response(200, json=next(responses))

    client = tv_client(handler)
    try:
        assert await client.probe(TV_RECORD) is True
        assert await client.probe(TV_RECORD) is False
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_tradingview_error_body_is_extracted():
    client = tv_client(lambda request: httpx.Response(403, json={"detail": "Forbidden"}))
    try:
        with pytest.raises(PlatformHTTPError) as exc_info:
            await client.probe(TV_RECORD)
    finally:
        await client.close()

    assert exc_info.value.status == 403
    assert exc_info.value.message == "Forbidden"


@pytest.mark.asyncio
async def test_tradingview_invalid_json_is_data_format_error():
    client = tv_client(lambda request: httpx.Response(200, text="<html>oops</html>"))
    try:
        with pytest.raises(PlatformHTTPError) as exc_info:
            await client.probe(TV_RECORD)
    finally:
        await client.close()

    assert exc_info.value.status == 422


@pytest.mark.asyncio
async def test_tradingview_watchlists():
    body = [{"id": 1, "name": "Main"}, {"id": 2}, {"name": "no id"}, "junk"]
    client = tv_client(lambda request: httpx.Response(200, json=body))
    try:
        watchlists = await client.list_watchlists(TV_RECORD)
    finally:
        await client.close()

    assert [(w.id, w.name) for w in watchlists] == [("1", "Main"), ("2", "2")]


@pytest.mark.asyncio
async def test_tradingview_watchlists_must_be_a_list():
    client = tv_client(lambda request: httpx.Response(200, json={"lists": []}))
    try:
        with pytest.raises(PlatformHTTPError) as exc_info:
            await client.list_watchlists(TV_RECORD)
    finally:
        await client.close()

    assert exc_info.value.status == 422


@pytest.mark.asyncio
async def test_marketinout_json_error_body_is_extracted():
    client = mio_client(
        lambda request: httpx.Response(500, json={"errors": ["Watchlist service down", "retry"]})
    )
    try:
        with pytest.raises(PlatformHTTPError) as exc_info:
            await client.list_watchlists(MIO_RECORD)
    finally:
        await client.close()

    assert exc_info.value.message == "Watchlist service down, retry"


@pytest.mark.asyncio
async def test_marketinout_html_error_body_uses_reason_phrase():
    client = mio_client(lambda request: httpx.Response(503, text="<html>down</html>"))
    try:
        with pytest.raises(PlatformHTTPError) as exc_info:
            await client.list_watchlists(MIO_RECORD)
    finally:
        await client.close()

    assert exc_info.value.message == "Service Unavailable"
