"""Platform client protocol and shared httpx transport."""

import logging
from typing import Optional, Protocol, runtime_checkable

import httpx

from ..config import settings
from ..cookies import dict_to_cookie_string, is_asp_session_cookie, session_cookie_pair
from ..errors import Platform, PlatformHTTPError
from ..models import PlatformSessionRecord, Watchlist

logger = logging.getLogger(__name__)

LOGIN_MARKERS = ("login", "signin")


@runtime_checkable
class PlatformClient(Protocol):
    """What the monitor and validator need from a platform."""

    async def probe(self, record: PlatformSessionRecord) -> bool: ...

    async def list_watchlists(self, record: PlatformSessionRecord) -> list[Watchlist]: ...

    async def refresh(self, record: PlatformSessionRecord) -> bool: ...


def detect_platform(url: Optional[str] = None, session_key: Optional[str] = None) -> Platform:
    """Guess the platform from the capture URL or the session cookie name."""
    if url:
        if "marketinout.com" in url:
            return Platform.MARKETINOUT
        if "tradingview.com" in url:
            return Platform.TRADINGVIEW

    if session_key:
        if is_asp_session_cookie(session_key):
            return Platform.MARKETINOUT
        if session_key == "sessionid":
            return Platform.TRADINGVIEW

    return Platform.UNKNOWN


class HttpPlatformClient:
    """
    Cookie-authenticated httpx client for one platform.

    Error statuses and redirects to a login page are raised as
    PlatformHTTPError; transport errors propagate unchanged.
    """

    platform: Platform = Platform.UNKNOWN
    session_cookie_name: Optional[str] = None

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        user_agent: Optional[str] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Platform base URL
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
            user_agent: User-Agent header value
        """
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.platform_timeout,
            transport=transport,
            follow_redirects=False,
            headers={"User-Agent": user_agent or settings.user_agent},
        )

    def cookie_header(self, record: PlatformSessionRecord) -> str:
        """Cookie header for a record: its session pair plus valid extra cookies."""
        cookies = {}
        pair = session_cookie_pair(record, self.session_cookie_name)
        if pair is None:
            raise PlatformHTTPError(401, "No session cookie in record")
        for name, value in record.extra.items():
            cookies[name] = value
        cookies[pair[0]] = pair[1]
        return dict_to_cookie_string(cookies)

    async def request(
        self,
        method: str,
        path: str,
        record: PlatformSessionRecord,
        allow_redirect_status: bool = False,
        **kwargs,
    ) -> httpx.Response:
        """
        Send an authenticated request.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            record: Session record providing the cookies
            allow_redirect_status: Return 3xx responses that do not point at a login page

        Returns:
            The response

        Raises:
            PlatformHTTPError: Error status or login redirect
            httpx.TransportError: Network failure or timeout
        """
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Cookie"] = self.cookie_header(record)
        response = await self._client.request(method, path, headers=headers, **kwargs)
        url = str(response.request.url)

        if response.is_redirect:
            location = response.headers.get("location", "").lower()
            if any(marker in location for marker in LOGIN_MARKERS):
                logger.info(f"{self.platform.display_name} redirected to login: {location}")
                raise PlatformHTTPError(401, "Session expired - redirected to login page", url)
            if not allow_redirect_status:
                raise PlatformHTTPError(
                    response.status_code, f"Unexpected redirect to {location}", url
                )

        if response.status_code >= 400:
            raise PlatformHTTPError(
                response.status_code, self.error_message(response), url
            )

        return response

    def error_message(self, response: httpx.Response) -> str:
        return response.reason_phrase or f"HTTP {response.status_code}"

    async def close(self) -> None:
        await self._client.aclose()
