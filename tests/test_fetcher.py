import asyncio

import pytest

from conftest import FakeSession, make_source, rss
from errors import ItemProcessingError, SourceFetchError
from fetcher import FeedFetcher
from identity import PostSnapshot, generate_post_id
from models import STATUS_ERROR, STATUS_OK, Post
from relay import FeedResponse, FetchPolicy


class StaticStrategy:
    """Serves canned bodies (or raises canned errors) keyed by feed URL."""

    name = "static"

    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    async def fetch(self, source, session):
        self.calls.append(source.id)
        outcome = self.outcomes[source.feed_url]
        if isinstance(outcome, BaseException):
            raise outcome
        return FeedResponse(outcome, self.name)


def _fetcher(config, outcomes, patterns=(), sleeper=None):
    strategy = StaticStrategy(outcomes)
    policy = FetchPolicy(strategy, strategy, list(patterns))
    kwargs = {"sleeper": sleeper} if sleeper else {}
    return FeedFetcher(config, policy=policy, **kwargs), strategy


ITEM_A = ("First post", "https://example.example.com/a", "Mon, 03 Jun 2024 10:00:00 GMT", "<p>Alpha body</p>")
ITEM_B = ("Second post", "https://example.example.com/b", "Tue, 04 Jun 2024 10:00:00 GMT", "Beta body")
UNDATED = ("Undated post", "https://example.example.com/undated", None, "No date here")


def test_partition_preserves_order_and_flags(make_config):
    fetcher, _ = _fetcher(make_config(), {}, patterns=["substack.com"])
    sources = [
        make_source("a"),
        make_source("b", feed_url="https://b.substack.com/feed"),
        make_source("c", force_proxy=True),
        make_source("d"),
    ]
    direct, sensitive = fetcher.partition_sources(sources)
    assert [s.id for s in direct] == ["a", "d"]
    assert [s.id for s in sensitive] == ["b", "c"]


@pytest.mark.asyncio
async def test_fault_isolation_and_registry_order(make_config):
    good = make_source("example")
    missing = make_source("missing")
    broken = make_source("broken")
    fetcher, _ = _fetcher(make_config(), {
        good.feed_url: rss(ITEM_A, ITEM_B),
        missing.feed_url: SourceFetchError("HTTP 404", status=404),
        broken.feed_url: b"this is not a feed",
    })

    results = await fetcher.fetch_all([missing, good, broken], session=FakeSession())
    await fetcher.close()

    assert [r.source.id for r in results] == ["missing", "example", "broken"]
    assert results[0].log.status == STATUS_ERROR
    assert results[0].log.error == "HTTP 404"
    assert results[0].posts == []
    assert results[1].log.status == STATUS_OK
    assert results[1].log.post_count == 2
    assert results[2].log.status == STATUS_ERROR
    assert results[2].posts == []


@pytest.mark.asyncio
async def test_unexpected_exception_is_contained(make_config):
    source = make_source("example")
    fetcher, _ = _fetcher(make_config(), {source.feed_url: RuntimeError("boom")})
    results = await fetcher.fetch_all([source], session=FakeSession())
    await fetcher.close()
    assert results[0].log.status == STATUS_ERROR
    assert "boom" in results[0].log.error


@pytest.mark.asyncio
async def test_sensitive_batches_pause_between_batches(make_config, sleeper):
    config = make_config(SENSITIVE_BATCH_SIZE=2, SENSITIVE_BATCH_DELAY=7)
    sources = [make_source(f"s{i}", force_proxy=True) for i in range(5)]
    fetcher, strategy = _fetcher(config, {s.feed_url: rss(ITEM_A) for s in sources}, sleeper=sleeper)

    results = await fetcher.fetch_all(sources, session=FakeSession())
    await fetcher.close()

    assert sleeper.delays == [7.0, 7.0]
    assert sorted(strategy.calls) == [s.id for s in sources]
    assert all(r.log.ok for r in results)


@pytest.mark.asyncio
async def test_undated_item_dropped_but_source_ok(make_config):
    source = make_source("example")
    fetcher, _ = _fetcher(make_config(), {source.feed_url: rss(ITEM_A, UNDATED, ITEM_B)})
    results = await fetcher.fetch_all([source], session=FakeSession())
    await fetcher.close()

    result = results[0]
    assert result.log.status == STATUS_OK
    assert result.log.post_count == 2
    assert {p.title for p in result.posts} == {"First post", "Second post"}


@pytest.mark.asyncio
async def test_allow_missing_dates_synthesizes_fallback(make_config):
    source = make_source("example", allow_missing_dates=True)
    fetcher, _ = _fetcher(make_config(), {
        source.feed_url: rss(UNDATED, last_build_date="Sat, 01 Jun 2024 09:00:00 GMT"),
    })
    results = await fetcher.fetch_all([source], session=FakeSession())
    await fetcher.close()
    assert results[0].posts[0].date == "2024-06-01T09:00:00.000Z"


@pytest.mark.asyncio
async def test_max_items_and_duplicates(make_config):
    source = make_source("example", max_items=3)
    duplicate = ("First post again", "https://example.example.com/a/?utm_source=rss", ITEM_A[2], "Dup")
    extra = ("Third post", "https://example.example.com/c", "Wed, 05 Jun 2024 10:00:00 GMT", "Gamma")
    fetcher, _ = _fetcher(make_config(), {source.feed_url: rss(ITEM_A, duplicate, ITEM_B, extra)})
    results = await fetcher.fetch_all([source], session=FakeSession())
    await fetcher.close()

    # only the first three items are considered and the second collapses into the first
    links = [p.link for p in results[0].posts]
    assert links == ["https://example.example.com/a", "https://example.example.com/b"]
    assert results[0].posts[0].title == "First post"


@pytest.mark.asyncio
async def test_existing_post_keeps_id_and_excerpt(make_config):
    source = make_source("example")
    stored = Post(
        id="legacy-id",
        source_id="example",
        title="Old title",
        link="https://example.example.com/a",
        date="2024-06-03T10:00:00.000Z",
        excerpt="Stored excerpt",
    )
    item = ("New title", "https://example.example.com/a", ITEM_A[2], None)
    fetcher, _ = _fetcher(make_config(), {source.feed_url: rss(item)})
    results = await fetcher.fetch_all([source], PostSnapshot([stored]), session=FakeSession())
    await fetcher.close()

    post = results[0].posts[0]
    assert post.id == "legacy-id"
    assert post.title == "New title"
    assert post.excerpt == "Stored excerpt"


@pytest.mark.asyncio
async def test_post_fields_are_normalized(make_config):
    source = make_source("example")
    item = ("Tom &amp;amp; Jerry", "https://example.example.com/p/?utm_campaign=x#top", ITEM_A[2], "<p>Body</p>")
    fetcher, _ = _fetcher(make_config(), {source.feed_url: rss(item)})
    results = await fetcher.fetch_all([source], session=FakeSession())
    await fetcher.close()

    post = results[0].posts[0]
    assert post.link == "https://example.example.com/p"
    assert post.id == generate_post_id("example", "https://example.example.com/p")
    assert post.title == "Tom & Jerry"
    assert post.excerpt == "Body"
    assert post.date == "2024-06-03T10:00:00.000Z"


def test_normalize_entry_without_identity_raises(make_config):
    fetcher, _ = _fetcher(make_config(), {})
    with pytest.raises(ItemProcessingError):
        fetcher.normalize_entry(make_source("example"), {}, 0, PostSnapshot())


class InFlightStrategy(StaticStrategy):
    """Records the highest number of fetches running at once."""

    def __init__(self, outcomes):
        super().__init__(outcomes)
        self.in_flight = 0
        self.peak = 0

    async def fetch(self, source, session):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await super().fetch(source, session)
        finally:
            self.in_flight -= 1


@pytest.mark.asyncio
async def test_direct_fetches_respect_feed_concurrency(make_config):
    sources = [make_source(f"s{i}") for i in range(6)]
    strategy = InFlightStrategy({source.feed_url: rss(ITEM_A) for source in sources})
    fetcher = FeedFetcher(make_config(FEED_CONCURRENCY=2), policy=FetchPolicy(strategy, strategy, []))

    results = await fetcher.fetch_all(sources, session=FakeSession())
    await fetcher.close()

    assert all(result.log.status == STATUS_OK for result in results)
    assert strategy.peak == 2


@pytest.mark.asyncio
async def test_homepage_link_does_not_take_over_linkless_post(make_config):
    source = make_source("example")
    stored = Post(
        id="guid-post",
        source_id="example",
        title="Item without a link",
        link=source.url,
        date="2024-06-03T10:00:00.000Z",
    )
    item = ("Homepage item", source.url, ITEM_B[2], "About this site")
    fetcher, _ = _fetcher(make_config(), {source.feed_url: rss(item)})
    snapshot = PostSnapshot([stored], source_urls={source.id: source.url})
    results = await fetcher.fetch_all([source], snapshot, session=FakeSession())
    await fetcher.close()

    post = results[0].posts[0]
    assert post.title == "Homepage item"
    assert post.id != "guid-post"
    assert post.id == generate_post_id("example", post.link)
