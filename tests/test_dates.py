from datetime import datetime, timezone

import feedparser
import pytest

from conftest import make_source
from dates import (
    DateResolver,
    infer_date_from_text,
    parse_date_value,
    parse_iso,
    should_infer_date_from_link,
    to_iso,
)

NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def resolver():
    return DateResolver(max_future_days=2, recent_primary_days=7, inferred_date_max_diff_days=30, clock=lambda: NOW)


@pytest.fixture
def source():
    return make_source("blog", url="https://blog.example.com", feed_url="https://blog.example.com/feed")


def test_iso_round_trip_format():
    assert to_iso(datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)) == "2024-01-02T03:04:05.678Z"
    assert parse_iso("2024-01-02T03:04:05.678Z") == datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
    assert parse_iso("garbage") is None


@pytest.mark.parametrize("value, expected", [
    ("Mon, 03 Jun 2024 10:00:00 GMT", datetime(2024, 6, 3, 10, 0, tzinfo=timezone.utc)),
    ("2024-06-03T10:00:00+02:00", datetime(2024, 6, 3, 8, 0, tzinfo=timezone.utc)),
    ("2024-06-03", datetime(2024, 6, 3, tzinfo=timezone.utc)),
    (datetime(2024, 6, 3, 10, 0).timetuple(), datetime(2024, 6, 3, 10, 0, tzinfo=timezone.utc)),
])
def test_parse_date_value_formats(value, expected):
    assert parse_date_value(value) == expected


@pytest.mark.parametrize("value", [None, "", "not a date", 0, True])
def test_parse_date_value_rejects(value):
    assert parse_date_value(value) is None


def test_infer_date_from_text():
    assert infer_date_from_text("https://x.com/2024/05/07/post") == datetime(2024, 5, 7, tzinfo=timezone.utc)
    assert infer_date_from_text("https://x.com/posts/20240507-post") == datetime(2024, 5, 7, tzinfo=timezone.utc)
    assert infer_date_from_text("https://x.com/2024/13/45/post") is None
    assert infer_date_from_text(None) is None


def test_should_infer_date_from_link_host_rules(source):
    assert should_infer_date_from_link(source, "https://blog.example.com/2024/01/01/a", None)
    assert should_infer_date_from_link(source, "https://www.blog.example.com/2024/01/01/a", None)
    assert not should_infer_date_from_link(source, "https://elsewhere.org/2024/01/01/a", None)

    ignoring = make_source("blog", url="https://blog.example.com", ignore_link_date_inference=True)
    assert not should_infer_date_from_link(ignoring, "https://blog.example.com/2024/01/01/a", None)

    allowing = make_source("blog", url="https://blog.example.com", allow_link_date_inference=True)
    assert should_infer_date_from_link(allowing, "https://elsewhere.org/2024/01/01/a", None)


def test_primary_date_used_when_valid(resolver, source):
    entry = {"link": "https://blog.example.com/post", "published": "2024-06-10T08:00:00Z"}
    assert resolver.resolve(entry, {}, source, 0) == "2024-06-10T08:00:00.000Z"


def test_parsed_struct_preferred_over_raw_string(resolver, source):
    entry = feedparser.FeedParserDict({
        "link": "https://blog.example.com/post",
        "published": "whatever the feed said",
        "published_parsed": datetime(2024, 6, 1, 9, 30).timetuple(),
    })
    assert resolver.resolve(entry, {}, source, 0) == "2024-06-01T09:30:00.000Z"


def test_recent_primary_yields_to_much_older_inferred_date(resolver, source):
    entry = {"link": "https://blog.example.com/2023/01/15/old-post", "published": "2024-06-14T00:00:00Z"}
    assert resolver.resolve(entry, {}, source, 0) == "2023-01-15T00:00:00.000Z"


def test_inferred_date_ignored_for_foreign_host(resolver, source):
    entry = {"link": "https://elsewhere.org/2023/01/15/old-post", "published": "2024-06-14T00:00:00Z"}
    assert resolver.resolve(entry, {}, source, 0) == "2024-06-14T00:00:00.000Z"


def test_old_primary_kept_even_with_older_inferred(resolver, source):
    # primary is not "recent", so it is trusted
    entry = {"link": "https://blog.example.com/2023/01/15/old-post", "published": "2024-03-01T00:00:00Z"}
    assert resolver.resolve(entry, {}, source, 0) == "2024-03-01T00:00:00.000Z"


def test_future_primary_falls_through_to_inferred(resolver, source):
    entry = {"link": "https://blog.example.com/2024/06/01/post", "published": "2024-07-01T00:00:00Z"}
    assert resolver.resolve(entry, {}, source, 0) == "2024-06-01T00:00:00.000Z"


def test_future_primary_falls_through_to_existing(resolver, source):
    entry = {"link": "https://blog.example.com/post", "published": "2024-07-01T00:00:00Z"}
    resolved = resolver.resolve(entry, {}, source, 0, existing_date="2024-05-05T05:05:05.000Z")
    assert resolved == "2024-05-05T05:05:05.000Z"


def test_existing_date_ignored_when_source_ignores_inference(resolver):
    source = make_source("blog", url="https://blog.example.com", ignore_link_date_inference=True)
    entry = {"link": "https://blog.example.com/post"}
    assert resolver.resolve(entry, {}, source, 0, existing_date="2024-05-05T05:05:05.000Z") is None


def test_undated_item_without_fallback_is_unresolved(resolver, source):
    assert resolver.resolve({"link": "https://blog.example.com/post"}, {}, source, 0) is None


def test_fallback_uses_feed_timestamp_minus_index_minutes(resolver):
    source = make_source("blog", url="https://blog.example.com", allow_missing_dates=True)
    header = {"updated": "2024-06-15T09:00:00Z"}
    entry = {"link": "https://blog.example.com/post"}
    assert resolver.resolve(entry, header, source, 3) == "2024-06-15T08:57:00.000Z"


def test_fallback_uses_now_when_feed_timestamp_is_missing(resolver):
    source = make_source("blog", url="https://blog.example.com", allow_missing_dates=True)
    assert resolver.resolve({"title": "x"}, {}, source, 2) == "2024-06-15T11:58:00.000Z"


def test_future_window_boundary(resolver):
    assert resolver.is_valid(datetime(2024, 6, 17, 12, 0, tzinfo=timezone.utc), NOW)
    assert not resolver.is_valid(datetime(2024, 6, 17, 12, 1, tzinfo=timezone.utc), NOW)
