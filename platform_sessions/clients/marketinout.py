"""MarketInOut client."""

import html
import logging
import re

import httpx

from ..errors import Platform, PlatformHTTPError, extract_marketinout_error
from ..models import PlatformSessionRecord, Watchlist
from .base import HttpPlatformClient

logger = logging.getLogger(__name__)

WATCHLIST_PATH = "/wl/watch_list.php?mode=list"

_SELECT_RE = re.compile(
    r"<select[^>]*id=[\"']?sel_wlid[\"']?[^>]*>(.*?)</select>", re.IGNORECASE | re.DOTALL
)
_OPTION_RE = re.compile(
    r"<option[^>]*value=[\"']?([^\"'\s>]+)[\"']?[^>]*>(.*?)</option>", re.IGNORECASE | re.DOTALL
)
_LOGIN_FORM_MARKERS = ("login", "signin", "password")
_WATCHLIST_MARKERS = ("sel_wlid", "watch_list", "watchlist")


def parse_watchlists(page: str) -> list[Watchlist]:
    """Watchlists from the ``sel_wlid`` select on the watch-list page."""
    select = _SELECT_RE.search(page)
    if not select:
        return []

    watchlists = []
    for value, label in _OPTION_RE.findall(select.group(1)):
        name = html.unescape(re.sub(r"<[^>]+>", "", label)).strip()
        if value and name:
            watchlists.append(Watchlist(id=value, name=name))
    return watchlists


def looks_like_login_page(page: str) -> bool:
    lower = page.lower()
    if any(marker in lower for marker in _WATCHLIST_MARKERS):
        return False
    return any(marker in lower for marker in _LOGIN_FORM_MARKERS)


class MarketInOutClient(HttpPlatformClient):
    """MarketInOut, authenticated by the ASPSESSIONID* cookie."""

    platform = Platform.MARKETINOUT

    def error_message(self, response: httpx.Response) -> str:
        if "json" not in response.headers.get("content-type", ""):
            return super().error_message(response)
        try:
            return extract_marketinout_error(response.json())
        except ValueError:
            return super().error_message(response)

    async def _watchlist_page(self, record: PlatformSessionRecord) -> str:
        response = await self.request("GET", WATCHLIST_PATH, record)
        page = response.text
        if looks_like_login_page(page):
            raise PlatformHTTPError(
                401, "Session invalid - login required", str(response.request.url)
            )
        return page

    async def probe(self, record: PlatformSessionRecord) -> bool:
        await self._watchlist_page(record)
        return True

    async def list_watchlists(self, record: PlatformSessionRecord) -> list[Watchlist]:
        watchlists = parse_watchlists(await self._watchlist_page(record))
        logger.debug(f"Found {len(watchlists)} MarketInOut watchlists")
        return watchlists

    async def refresh(self, record: PlatformSessionRecord) -> bool:
        """Touch the watch-list page to keep the session alive."""
        response = await self.request("HEAD", WATCHLIST_PATH, record, allow_redirect_status=True)
        return response.is_success or response.status_code == 302
