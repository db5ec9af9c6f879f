"""Raw failure shapes and their conversion into a closed sum type."""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx


class PlatformHTTPError(Exception):
    """A platform answered with an error status (or an equivalent signal)."""

    def __init__(self, status: int, message: str = "", url: Optional[str] = None):
        super().__init__(message or f"HTTP {status}")
        self.status = status
        self.message = message
        self.url = url


@dataclass(frozen=True)
class HttpFailure:
    """The platform responded with an error status."""

    status: int
    message: str = ""
    url: Optional[str] = None


@dataclass(frozen=True)
class NetworkFailure:
    """The request never got a usable response (transport error, timeout)."""

    cause: BaseException
    url: Optional[str] = None


@dataclass(frozen=True)
class UnknownFailure:
    """Anything else: plain exceptions, strings, arbitrary values."""

    raw: Any


Failure = Union[HttpFailure, NetworkFailure, UnknownFailure]


def describe(raw: Any) -> str:
    """Best-effort message for an arbitrary raised value."""
    if raw is None:
        return ""
    if isinstance(raw, BaseException):
        return str(raw) or type(raw).__name__
    return str(raw)


def _request_url(exc: httpx.HTTPError) -> Optional[str]:
    try:
        return str(exc.request.url)
    except RuntimeError:
        # httpx raises when the error was built without a request
        return None


def _status_of(raw: Any) -> Optional[int]:
    if isinstance(raw, Mapping):
        value = raw.get("status", raw.get("status_code"))
    else:
        value = getattr(raw, "status", getattr(raw, "status_code", None))
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def to_failure(raw: Any) -> Failure:
    """Classify a caught value into one of the Failure variants."""
    if isinstance(raw, PlatformHTTPError):
        return HttpFailure(raw.status, raw.message, raw.url)

    if isinstance(raw, httpx.HTTPStatusError):
        return HttpFailure(
            raw.response.status_code,
            raw.response.reason_phrase or str(raw),
            str(raw.request.url),
        )

    if isinstance(raw, httpx.TransportError):
        return NetworkFailure(raw, _request_url(raw))

    if isinstance(raw, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return NetworkFailure(raw)

    status = _status_of(raw)
    if status is not None:
        if isinstance(raw, Mapping):
            message = str(raw.get("message") or raw.get("error") or "")
            url = raw.get("url")
        else:
            message = describe(raw)
            url = getattr(raw, "url", None)
        return HttpFailure(status, message, str(url) if url else None)

    return UnknownFailure(raw)
