"""TradingView client."""

import logging

import httpx

from ..errors import Platform, PlatformHTTPError, extract_tradingview_error
from ..models import PlatformSessionRecord, Watchlist
from .base import HttpPlatformClient

logger = logging.getLogger(__name__)

USER_PATH = "/api/v1/user/"
WATCHLISTS_PATH = "/api/v1/symbols_list/all/"


class TradingViewClient(HttpPlatformClient):
    """TradingView, authenticated by the ``sessionid`` cookie."""

    platform = Platform.TRADINGVIEW
    session_cookie_name = "sessionid"

    def error_message(self, response: httpx.Response) -> str:
        try:
            return extract_tradingview_error(response.json())
        except ValueError:
            return super().error_message(response)

    async def _get_json(self, path: str, record: PlatformSessionRecord):
        response = await self.request(
            "GET", path, record, headers={"Accept": "application/json"}
        )
        try:
            return response.json()
        except ValueError as e:
            raise PlatformHTTPError(
                422, f"Invalid JSON format from {path}", str(response.request.url)
            ) from e

    async def probe(self, record: PlatformSessionRecord) -> bool:
        data = await self._get_json(USER_PATH, record)
        return isinstance(data, dict) and bool(
            data.get("id") or data.get("username") or data.get("user")
        )

    async def list_watchlists(self, record: PlatformSessionRecord) -> list[Watchlist]:
        data = await self._get_json(WATCHLISTS_PATH, record)
        if not isinstance(data, list):
            raise PlatformHTTPError(422, "Expected a list of watchlists")
        watchlists = [
            Watchlist(id=str(item["id"]), name=str(item.get("name") or item["id"]))
            for item in data
            if isinstance(item, dict) and item.get("id") is not None
        ]
        logger.debug(f"Found {len(watchlists)} TradingView watchlists")
        return watchlists

    async def refresh(self, record: PlatformSessionRecord) -> bool:
        return await self.probe(record)
