"""Set-Cookie parsing and ASPSESSION cookie helpers."""

import logging
import re
from collections.abc import Mapping
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Optional, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ASPSESSION_PATTERN = re.compile(r"^ASPSESSIONID[A-Z0-9]+$")
COOKIE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

MAX_COOKIE_NAME_LENGTH = 256
MAX_COOKIE_VALUE_LENGTH = 4096
MAX_COOKIES_PER_HEADER = 50

SUSPICIOUS_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"<script",
        r"javascript:",
        r"vbscript:",
        r"onload=",
        r"onerror=",
        r"eval\(",
        r"document\.",
        r"window\.",
    )
]

SAME_SITE_VALUES = ("Strict", "Lax", "None")


class ParsedCookie(BaseModel):
    """One cookie from a Set-Cookie header."""

    name: str
    value: str
    domain: Optional[str] = None
    path: Optional[str] = None
    expires: Optional[datetime] = None
    max_age: Optional[int] = None
    http_only: bool = False
    secure: bool = False
    same_site: Optional[str] = None


class CookieParseResult(BaseModel):
    """Parsed cookies, the ASPSESSION subset and per-segment errors."""

    cookies: list[ParsedCookie] = Field(default_factory=list)
    asp_session_cookies: list[ParsedCookie] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


def is_asp_session_cookie(name: str) -> bool:
    """Whether name follows the MarketInOut session cookie convention."""
    return bool(name) and ASPSESSION_PATTERN.match(name) is not None


def _format_problem(name: str, value: str) -> Optional[str]:
    if not name:
        return "empty cookie name"
    if len(name) > MAX_COOKIE_NAME_LENGTH:
        return f"cookie name too long ({len(name)} chars)"
    if not COOKIE_NAME_PATTERN.match(name):
        return f"invalid cookie name {name!r}"
    if len(value) > MAX_COOKIE_VALUE_LENGTH:
        return f"cookie value too long for {name} ({len(value)} chars)"
    for pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(value):
            return f"suspicious value in cookie {name}"
    return None


def validate_cookie_format(name: str, value: str) -> bool:
    """Check name and value against the size, charset and injection rules."""
    if not isinstance(name, str) or not isinstance(value, str):
        return False
    problem = _format_problem(name, value)
    if problem:
        logger.debug(f"Rejected cookie: {problem}")
        return False
    return True


def split_cookie_header(header: str) -> list[str]:
    """
    Split a combined Set-Cookie header into single cookie strings.

    Commas separate cookies except for the one inside an ``Expires`` date
    (``Expires=Wed, 21 Oct 2026 07:28:00 GMT``).
    """
    segments = []
    current = []
    attribute_start = 0
    in_date = False

    for char in header:
        if char == "," and not in_date:
            segment = "".join(current).strip()
            if segment:
                segments.append(segment)
            current = []
            attribute_start = 0
            continue

        if char == "," and in_date:
            in_date = False
        elif char == ";":
            in_date = False
            attribute_start = len(current) + 1
        elif char == "=":
            attribute = "".join(current[attribute_start:]).strip().lower()
            in_date = attribute == "expires"
        current.append(char)

    segment = "".join(current).strip()
    if segment:
        segments.append(segment)
    return segments


def _parse_single_cookie(cookie_string: str) -> ParsedCookie:
    parts = [part.strip() for part in cookie_string.split(";")]
    name, sep, value = parts[0].partition("=")
    if not sep:
        raise ValueError(f"missing '=' in {parts[0][:50]!r}")

    name, value = name.strip(), value.strip()
    problem = _format_problem(name, value)
    if problem:
        raise ValueError(problem)

    cookie = ParsedCookie(name=name, value=value)

    for part in parts[1:]:
        attr_name, sep, attr_value = part.partition("=")
        attr_name = attr_name.strip().lower()
        attr_value = attr_value.strip()

        if not sep:
            if attr_name == "httponly":
                cookie.http_only = True
            elif attr_name == "secure":
                cookie.secure = True
        elif attr_name == "domain":
            cookie.domain = attr_value
        elif attr_name == "path":
            cookie.path = attr_value
        elif attr_name == "expires":
            try:
                cookie.expires = parsedate_to_datetime(attr_value)
            except (TypeError, ValueError) as e:
                raise ValueError(f"invalid Expires date {attr_value!r} for {name}") from e
        elif attr_name == "max-age":
            try:
                cookie.max_age = int(attr_value)
            except ValueError:
                pass
        elif attr_name == "samesite":
            if attr_value in SAME_SITE_VALUES:
                cookie.same_site = attr_value

    return cookie


def parse_set_cookie_header(raw: Union[str, list[str], None]) -> CookieParseResult:
    """
    Parse one or more Set-Cookie headers.

    Bad segments are reported in ``errors``; parsing continues with the
    next cookie.

    Args:
        raw: A header string, a list of header strings, or None

    Returns:
        CookieParseResult with all cookies and the ASPSESSION subset
    """
    result = CookieParseResult()
    if not raw:
        return result

    headers = raw if isinstance(raw, list) else [raw]
    for header in headers:
        if not header or not isinstance(header, str):
            result.errors.append("Invalid Set-Cookie header format")
            continue

        cookie_strings = split_cookie_header(header)
        if len(cookie_strings) > MAX_COOKIES_PER_HEADER:
            result.errors.append(f"Too many cookies in header (max: {MAX_COOKIES_PER_HEADER})")
            continue

        for cookie_string in cookie_strings:
            try:
                cookie = _parse_single_cookie(cookie_string)
            except ValueError as e:
                result.errors.append(f"Failed to parse cookie: {e}")
                continue
            result.cookies.append(cookie)
            if is_asp_session_cookie(cookie.name):
                result.asp_session_cookies.append(cookie)

    logger.debug(
        f"Parsed {len(result.cookies)} cookies, "
        f"{len(result.asp_session_cookies)} ASPSESSION cookies"
    )
    if result.errors:
        logger.warning(f"Cookie parse errors: {result.errors}")
    return result


def cookie_string_to_dict(cookie_string: str) -> dict[str, str]:
    """Parse a ``Cookie:`` style ``a=1; b=2`` string, keeping valid pairs."""
    cookies = {}
    if not cookie_string or not isinstance(cookie_string, str):
        return cookies

    for part in cookie_string.split(";"):
        name, sep, value = part.strip().partition("=")
        if not sep:
            continue
        name, value = name.strip(), value.strip()
        if validate_cookie_format(name, value):
            cookies[name] = value
    return cookies


def dict_to_cookie_string(cookies: Mapping[str, str]) -> str:
    return "; ".join(
        f"{name}={value}"
        for name, value in cookies.items()
        if validate_cookie_format(name, value)
    )


def extract_asp_session(
    data: Union[str, Mapping[str, str], list[ParsedCookie]]
) -> dict[str, str]:
    """Filter a cookie string, mapping or parsed list to ASPSESSION cookies."""
    if isinstance(data, str):
        data = cookie_string_to_dict(data)

    if isinstance(data, list):
        pairs = [(cookie.name, cookie.value) for cookie in data]
    elif isinstance(data, Mapping):
        pairs = list(data.items())
    else:
        return {}

    return {
        name: value
        for name, value in pairs
        if isinstance(value, str) and is_asp_session_cookie(name)
    }


def get_primary_asp_session(candidates: Mapping[str, str]) -> Optional[tuple[str, str]]:
    """
    Pick the session cookie to use when several ASPSESSION cookies exist.

    The lexicographically smallest name with a non-empty value wins, so the
    choice does not depend on mapping order.
    """
    names = sorted(
        name
        for name, value in candidates.items()
        if is_asp_session_cookie(name) and value
    )
    if not names:
        return None
    return names[0], candidates[names[0]]


def merge_cookies(
    existing: Mapping[str, str],
    new: Mapping[str, str],
    preserve_existing: bool = False,
) -> dict[str, str]:
    """
    Merge new cookies into existing ones.

    Invalid new cookies are skipped. Changed values are overwritten unless
    preserve_existing is set.
    """
    merged = dict(existing)
    changes = []

    for name, value in new.items():
        if not validate_cookie_format(name, value):
            logger.warning(f"Skipping invalid cookie: {name}")
            continue
        current = merged.get(name)
        if not current:
            merged[name] = value
            changes.append(f"Added: {name}")
        elif current != value:
            if preserve_existing:
                changes.append(f"Preserved existing: {name}")
            else:
                merged[name] = value
                changes.append(f"Updated: {name}")

    if changes:
        logger.debug(f"Cookie merge changes: {changes}")
    return merged


def sanitize_cookie_value(value: str) -> str:
    if not isinstance(value, str):
        return ""
    sanitized = re.sub(r"[<>'\"]", "", value)
    sanitized = re.sub(r"[\r\n\t]", "", sanitized)
    sanitized = re.sub(r"\s+", " ", sanitized).strip()
    return sanitized[:MAX_COOKIE_VALUE_LENGTH]


def update_asp_session_cookies(
    existing: Mapping[str, str], new_sessions: Mapping[str, str]
) -> dict[str, str]:
    """Replace every ASPSESSION cookie in existing with the valid new ones."""
    updated = {
        name: value for name, value in existing.items() if not is_asp_session_cookie(name)
    }
    for name, value in new_sessions.items():
        if is_asp_session_cookie(name) and validate_cookie_format(name, value):
            updated[name] = value
    return updated


def session_cookie_pair(record, default_name: Optional[str] = None) -> Optional[tuple[str, str]]:
    """
    Resolve the (name, value) session cookie for a stored record.

    A ``session_id`` of the form ``name=value`` is used as-is; otherwise the
    primary ASPSESSION entry of ``record.extra``; otherwise ``default_name``
    paired with the raw ``session_id``.
    """
    name, sep, value = record.session_id.partition("=")
    if sep and name and value:
        return name.strip(), value.strip()

    primary = get_primary_asp_session(record.extra)
    if primary:
        return primary

    if default_name and record.session_id:
        return default_name, record.session_id
    return None
