#!/usr/bin/env python3
"""
Utility classes and functions for the feed ingestion pipeline.

This module contains the pure text and URL helpers shared by the identity,
excerpt and date resolvers, plus the retry policy used by every network call
site.
"""

from asyncio import sleep
from html import unescape
from typing import Any, Awaitable, Callable, Optional, TypeVar
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit
import re
import warnings

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

T = TypeVar("T")

ELLIPSIS = "..."

_WHITESPACE_RE = re.compile(r"\s+")

TRACKING_PARAMS = frozenset({
    'utm_source',
    'utm_medium',
    'utm_campaign',
    'utm_term',
    'utm_content',
    'utm_id',
    'utm_reader',
    'utm_source_platform',
    'utm_marketing_tactic',
    'utm_pubref',
    'gclid',
    'fbclid',
    'mc_cid',
    'mc_eid',
    'ref',
    'ref_src',
    'source',
    'sourceid',
    '_hsenc',
    '_hsmi',
    'mkt_tok',
})


# ----------------------------------------------------------------------
# Text normalization
# ----------------------------------------------------------------------
def coerce_to_string(value) -> str:
    """Return a string for any feed value (None becomes '')."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


def get_entry_value(entry, field: str) -> Any:
    """Safely fetch feedparser entry fields with attribute or dict access."""
    if not field or entry is None:
        return None
    try:
        value = getattr(entry, field)
    except AttributeError:
        value = None

    if value is not None:
        return value

    getter = getattr(entry, 'get', None)
    if callable(getter):
        try:
            return getter(field)
        except KeyError:
            return None
    return None


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def decode_html_entities(text) -> str:
    """Decode named and numeric HTML entities (&amp;, &#8217;, &#x2014;, ...)."""
    normalized = coerce_to_string(text)
    if not normalized:
        return ""
    return unescape(normalized)


def strip_html(html) -> str:
    """Remove markup, decode entities and collapse whitespace.

    Args:
        html: HTML fragment (or plain text)

    Returns:
        Plain text on a single line
    """
    normalized = coerce_to_string(html)
    if not normalized:
        return ""
    if "<" not in normalized and "&" not in normalized:
        return collapse_whitespace(normalized)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        soup = BeautifulSoup(normalized, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return collapse_whitespace(soup.get_text())


def truncate_text(text: str, max_length: int, suffix: str = ELLIPSIS) -> str:
    """Cut text to max_length characters and append suffix when anything was dropped."""
    if not text or len(text) <= max_length:
        return text
    return text[:max_length].strip() + suffix


def create_excerpt(content, max_length: int = 300) -> str:
    """Plain-text excerpt of an HTML fragment, bounded to max_length (+ ellipsis)."""
    return truncate_text(strip_html(content), max_length)


# ----------------------------------------------------------------------
# URL canonicalization
# ----------------------------------------------------------------------
def _is_tracking_param(key: str) -> bool:
    lower = key.lower()
    return lower.startswith("utm_") or lower in TRACKING_PARAMS


def canonicalize_url(raw_url, base_url: Optional[str] = None) -> str:
    """Canonical form of a link used for identity and storage.

    - resolves relative links against base_url
    - drops the fragment
    - strips tracking parameters (utm_*, ref, fbclid, ...), keeping the rest in order
    - removes a trailing slash from non-root paths

    Values that cannot be read as absolute http(s) URLs are returned trimmed
    but otherwise untouched.
    """
    value = coerce_to_string(raw_url).strip()
    if not value:
        return ""
    try:
        candidate = urljoin(base_url, value) if base_url else value
        parts = urlsplit(candidate)
    except ValueError:
        return value
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https") or not parts.netloc:
        return value

    query_pairs = [
        (key, val)
        for key, val in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    query = urlencode(query_pairs)

    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]

    return urlunsplit((scheme, parts.netloc.lower(), path, query, ""))


def normalize_guid(raw_guid, base_url: Optional[str] = None) -> str:
    """Canonicalize a guid when it looks like a URL, otherwise just trim it."""
    guid = coerce_to_string(raw_guid).strip()
    if not guid:
        return ""
    if guid.startswith(("http://", "https://")):
        return canonicalize_url(guid, base_url)
    return guid


def normalize_host(raw_url) -> str:
    """Lower-cased hostname without a leading 'www.' ('' when unparseable)."""
    value = coerce_to_string(raw_url).strip()
    if not value:
        return ""
    try:
        host = (urlsplit(value).hostname or "").lower()
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host


def hosts_match(a: str, b: str) -> bool:
    """True when hosts are equal or one is a subdomain of the other."""
    if not a or not b:
        return False
    return a == b or a.endswith(f".{b}") or b.endswith(f".{a}")


def host_matches_pattern(host: str, pattern: str) -> bool:
    """True when host is pattern or a subdomain of it."""
    if not host or not pattern:
        return False
    return host == pattern or host.endswith(f".{pattern}")


# ----------------------------------------------------------------------
# Retry policy
# ----------------------------------------------------------------------
class RetryPolicy:
    """Bounded attempts with an escalating backoff schedule.

    Shared by the direct-fetch and relay-fetch paths so that every call site
    retries the same way.
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0, max_delay: float = 30.0,
                 sleeper: Callable[[float], Awaitable[None]] = sleep):
        """Initialize the retry policy.

        Args:
            max_attempts: Total number of attempts (first try included)
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between attempts
            sleeper: Coroutine used to wait (swapped out in tests)
        """
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleeper

    def calculate_delay(self, attempt: int) -> float:
        """Delay after the given (0-based) failed attempt."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    def schedule(self) -> list:
        """The full list of delays this policy may wait through."""
        return [self.calculate_delay(attempt) for attempt in range(self.max_attempts - 1)]

    async def sleep_for_attempt(self, attempt: int):
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await self._sleep(delay)

    async def run(self, operation: Callable[[], Awaitable[T]],
                  is_retryable: Callable[[BaseException], bool],
                  label: str = "operation") -> T:
        """Run operation until it succeeds, fails terminally or runs out of attempts.

        The last exception is re-raised unchanged once the budget is spent.
        """
        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except Exception as e:
                last_attempt = attempt + 1 >= self.max_attempts
                if last_attempt or not is_retryable(e):
                    raise
                logger.warning(
                    "Retry %d/%d for %s due to error: %s",
                    attempt + 1,
                    self.max_attempts - 1,
                    label,
                    str(e) or e.__class__.__name__,
                )
                await self.sleep_for_attempt(attempt)
        raise RuntimeError("unreachable")  # pragma: no cover
