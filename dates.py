#!/usr/bin/env python3
"""
Date resolution for feed items.

Feeds disagree about which field carries the publish date, some rewrite it on
every edit, and some omit it entirely. DateResolver picks one date per item
from three candidates (the feed's own timestamp, a date embedded in the link or
guid, and the date already stored for the post) and can synthesize a fallback
for sources that explicitly allow undated items.
"""

from calendar import timegm
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from time import struct_time
from typing import Any, Callable, Optional
import re

import feedparser

from config import get_logger
from utils import coerce_to_string, get_entry_value, hosts_match, normalize_host

logger = get_logger("dates")

# Entry fields consulted for the feed-supplied date, in precedence order
PRIMARY_DATE_FIELDS = (
    'published',
    'pubDate',
    'issued',
    'updated',
    'modified',
    'created',
    'date',
    'dc_date',
)

# Feed header fields used as the base for synthesized dates
FEED_DATE_FIELDS = (
    'lastBuildDate',
    'updated',
    'published',
    'pubDate',
)

_LINK_DATE_PATTERNS = (
    re.compile(r'(\d{4})[/-](\d{1,2})[/-](\d{1,2})'),
    re.compile(r'(\d{4})(\d{2})(\d{2})'),
)

_CUSTOM_FORMATS = (
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)

SECONDS_PER_DAY = 24 * 60 * 60


# ----------------------------------------------------------------------
# ISO helpers
# ----------------------------------------------------------------------
def to_iso(dt: datetime) -> str:
    """Format as UTC YYYY-MM-DDTHH:MM:SS.mmmZ."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (trailing 'Z' accepted) into an aware UTC datetime."""
    text = coerce_to_string(value).strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------
def _from_struct(value) -> Optional[datetime]:
    # feedparser's *_parsed values are UTC struct_time
    try:
        return datetime.fromtimestamp(timegm(tuple(value)[:9]), tz=timezone.utc)
    except (OverflowError, ValueError, OSError, TypeError):
        return None


def _parse_with_feedparser(date_str: str) -> Optional[datetime]:
    try:
        time_struct = feedparser._parse_date(date_str)
    except (ValueError, TypeError, AttributeError, OSError):
        return None
    return _from_struct(time_struct) if time_struct else None


def _parse_with_email_utils(date_str: str) -> Optional[datetime]:
    try:
        dt = parsedate_to_datetime(date_str)
    except (TypeError, ValueError, OverflowError, IndexError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_with_custom_formats(date_str: str) -> Optional[datetime]:
    for fmt in _CUSTOM_FORMATS:
        try:
            dt = datetime.strptime(date_str, fmt)
        except (ValueError, TypeError):
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    return None


def parse_date_value(value: Any) -> Optional[datetime]:
    """Convert assorted date representations into an aware UTC datetime.

    Accepts datetimes, epoch seconds, struct_time/9-tuples (as produced by
    feedparser) and strings in ISO-8601, RFC 822 and a few looser formats.
    Returns None when nothing matches.
    """
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, ValueError, OSError):
            return None

    if isinstance(value, (struct_time, tuple, list)):
        return _from_struct(value)

    date_str = coerce_to_string(value).strip()
    if not date_str:
        return None
    for parser in (parse_iso, _parse_with_feedparser, _parse_with_email_utils, _parse_with_custom_formats):
        dt = parser(date_str)
        if dt is not None:
            return dt
    return None


def primary_date_value(entry) -> Any:
    """Raw value of the first date field the entry carries.

    Prefers feedparser's parsed struct for a field when it has one, otherwise
    the raw string. Returns None when no date field is present.
    """
    for field in PRIMARY_DATE_FIELDS:
        parsed = get_entry_value(entry, f"{field}_parsed")
        if parsed:
            return parsed
        raw = get_entry_value(entry, field)
        if raw not in (None, ''):
            return raw
    return None


def infer_date_from_text(text: Any) -> Optional[datetime]:
    """Date embedded in a URL or guid (yyyy-mm-dd, yyyy/m/d or yyyymmdd), at midnight UTC."""
    value = text if isinstance(text, str) else ''
    if not value:
        return None
    for pattern in _LINK_DATE_PATTERNS:
        match = pattern.search(value)
        if not match:
            continue
        year, month, day = (int(part) for part in match.groups())
        try:
            return datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def should_infer_date_from_link(source, link: Any, guid: Any) -> bool:
    """Whether dates in this item's link/guid can be trusted for the source.

    Explicit source flags win; otherwise the link (or guid) must live on the
    source's own host, subdomains included.
    """
    if source.ignore_link_date_inference:
        return False
    if source.allow_link_date_inference:
        return True
    candidate = coerce_to_string(link) or coerce_to_string(guid)
    source_host = normalize_host(source.url or source.feed_url)
    link_host = normalize_host(candidate)
    return hosts_match(source_host, link_host)


# ----------------------------------------------------------------------
# Resolution
# ----------------------------------------------------------------------
class DateResolver:
    """Chooses one date per item from the primary, inferred and existing candidates."""

    def __init__(self, max_future_days: int = 2, recent_primary_days: int = 7,
                 inferred_date_max_diff_days: int = 30,
                 clock: Optional[Callable[[], datetime]] = None):
        self.max_future_days = max_future_days
        self.recent_primary_days = recent_primary_days
        self.inferred_date_max_diff_days = inferred_date_max_diff_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(cls, config, clock: Optional[Callable[[], datetime]] = None) -> "DateResolver":
        return cls(
            max_future_days=config.MAX_FUTURE_DAYS,
            recent_primary_days=config.RECENT_PRIMARY_DAYS,
            inferred_date_max_diff_days=config.INFERRED_DATE_MAX_DIFF_DAYS,
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    def is_valid(self, dt: Optional[datetime], now: datetime) -> bool:
        """A candidate is valid unless it lies more than max_future_days ahead of now."""
        if dt is None:
            return False
        return (dt - now).total_seconds() <= self.max_future_days * SECONDS_PER_DAY

    def prefer_inferred(self, primary: datetime, inferred: datetime, now: datetime) -> bool:
        """True when primary looks like a re-publish stamp on a much older post."""
        if inferred >= primary:
            return False
        diff_days = (primary - inferred).total_seconds() / SECONDS_PER_DAY
        primary_age_days = abs((now - primary).total_seconds()) / SECONDS_PER_DAY
        return diff_days >= self.inferred_date_max_diff_days and primary_age_days <= self.recent_primary_days

    def fallback_date(self, feed_header, index: int, now: datetime) -> datetime:
        """Feed-level timestamp (or now) minus index minutes."""
        base = None
        for field in FEED_DATE_FIELDS:
            value = get_entry_value(feed_header, f"{field}_parsed") or get_entry_value(feed_header, field)
            if value:
                base = parse_date_value(value)
                break
        if not self.is_valid(base, now):
            base = now
        return base - timedelta(minutes=index)

    def resolve(self, entry, feed_header, source, index: int,
                existing_date: Optional[str] = None, now: Optional[datetime] = None) -> Optional[str]:
        """Resolve the date for one item.

        Args:
            entry: feedparser entry (or any dict-like item)
            feed_header: feedparser feed-level metadata (may be None)
            source: the Source the item belongs to
            index: position of the item in the feed
            existing_date: ISO date already stored for the item, if any
            now: reference instant (defaults to the resolver clock)

        Returns:
            ISO-8601 UTC string, or None when the item has no usable date
        """
        now = now or self.now()

        primary = parse_date_value(primary_date_value(entry))

        inferred = None
        link = coerce_to_string(get_entry_value(entry, 'link'))
        guid = coerce_to_string(get_entry_value(entry, 'id') or get_entry_value(entry, 'guid'))
        if should_infer_date_from_link(source, link, guid):
            inferred = infer_date_from_text(link) or infer_date_from_text(guid)

        existing = None if source.ignore_link_date_inference else parse_iso(existing_date)

        primary_valid = self.is_valid(primary, now)
        inferred_valid = self.is_valid(inferred, now)

        if primary_valid and inferred_valid and self.prefer_inferred(primary, inferred, now):
            return to_iso(inferred)
        if primary_valid:
            return to_iso(primary)
        if inferred_valid:
            return to_iso(inferred)
        if self.is_valid(existing, now):
            return to_iso(existing)

        if source.allow_missing_dates:
            return to_iso(self.fallback_date(feed_header, index, now))

        if primary is not None:
            logger.debug(f"Discarding future date {to_iso(primary)} for item {link or guid} in {source.id}")
        return None
