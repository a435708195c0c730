import asyncio
from contextlib import asynccontextmanager

import pytest

from conftest import FakeResponse, FakeSession
from excerpt import ExcerptResolver, PageExcerptBudget, extract_page_excerpt, feed_excerpt

PROSE = "This paragraph is the real opening of the article and it is comfortably longer than eighty characters."


def test_extract_page_excerpt_skips_boilerplate_and_short_paragraphs():
    html = f"""
    <html><body>
      <p>Short intro</p>
      <p>By Jane Writer, who has written a great many things over a great many years for many people</p>
      <p>2024 was a year that saw many paragraphs begin with a year rather than with actual prose text</p>
      <p>{PROSE}</p>
    </body></html>
    """
    assert extract_page_excerpt(html) == PROSE


def test_extract_page_excerpt_truncates():
    html = "<p>" + "a " * 400 + "</p>"
    excerpt = extract_page_excerpt(html, max_length=50)
    assert excerpt.endswith("...")
    assert len(excerpt) <= 53


def test_extract_page_excerpt_nothing_suitable():
    assert extract_page_excerpt("<div>no paragraphs</div>") == ""
    assert extract_page_excerpt("") == ""


def test_feed_excerpt_prefers_content_then_summary():
    entry = {"content": [{"value": "<p>From content</p>"}], "summary": "From summary"}
    assert feed_excerpt(entry) == "From content"
    assert feed_excerpt({"summary": "<b>From</b> summary"}) == "From summary"
    assert feed_excerpt({"description": "From description"}) == "From description"
    assert feed_excerpt({}) == ""


def test_budget_counts_attempts():
    budget = PageExcerptBudget(2)
    assert budget.take()
    assert budget.take()
    assert not budget.take()
    assert budget.used == 2
    assert not PageExcerptBudget(0).take()


@pytest.mark.asyncio
async def test_resolve_order_feed_then_existing():
    resolver = ExcerptResolver(fetch_pages=True)
    session = FakeSession()
    budget = resolver.new_budget()

    assert await resolver.resolve({"summary": "Feed text"}, "https://example.com/a", "Stored", True, session, budget) == "Feed text"
    assert await resolver.resolve({}, "https://example.com/a", "Stored", False, session, budget) == "Stored"
    assert session.requests == []


@pytest.mark.asyncio
async def test_page_fetch_only_for_new_posts_within_budget():
    resolver = ExcerptResolver(fetch_pages=True, max_pages_per_source=1)
    session = FakeSession([FakeResponse(body=f"<p>{PROSE}</p>".encode())])
    budget = resolver.new_budget()

    assert await resolver.resolve({}, "https://example.com/old", None, False, session, budget) == ""
    assert await resolver.resolve({}, "https://example.com/new", None, True, session, budget) == PROSE
    assert await resolver.resolve({}, "https://example.com/other", None, True, session, budget) == ""
    assert session.requests == ["https://example.com/new"]


@pytest.mark.asyncio
async def test_page_fetch_disabled_uses_no_budget():
    resolver = ExcerptResolver(fetch_pages=False)
    session = FakeSession()
    assert await resolver.resolve({}, "https://example.com/new", None, True, session, resolver.new_budget()) == ""
    assert session.requests == []


@pytest.mark.asyncio
async def test_page_fetch_failures_become_empty_excerpt():
    resolver = ExcerptResolver(fetch_pages=True, max_pages_per_source=3)
    session = FakeSession([
        FakeResponse(status=404),
        asyncio.TimeoutError(),
        OSError("connection refused"),
    ])
    budget = resolver.new_budget()
    for path in ("a", "b", "c"):
        assert await resolver.resolve({}, f"https://example.com/{path}", None, True, session, budget) == ""
    assert budget.used == 3


class InFlightSession:
    """Serves the same page to every request and records peak concurrency."""

    def __init__(self, body):
        self.body = body
        self.in_flight = 0
        self.peak = 0

    def get(self, url, headers=None, timeout=None):
        return self._respond()

    @asynccontextmanager
    async def _respond(self):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            yield FakeResponse(body=self.body)
        finally:
            self.in_flight -= 1


@pytest.mark.asyncio
async def test_page_fetches_respect_excerpt_concurrency():
    resolver = ExcerptResolver(fetch_pages=True, concurrency=2)
    session = InFlightSession(f"<p>{PROSE}</p>".encode())

    excerpts = await asyncio.gather(*[
        resolver.fetch_page_excerpt(f"https://example.com/{n}", session) for n in range(6)
    ])

    assert excerpts == [PROSE] * 6
    assert session.peak == 2
