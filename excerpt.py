#!/usr/bin/env python3
"""
Excerpt resolution for feed items.

Preference order: the feed's own content or summary, then the excerpt already
stored for the post, then (new posts only, a few per source per run) the first
meaningful paragraph of the linked page.
"""

from asyncio import Semaphore, TimeoutError
from typing import Optional
import re
import warnings

from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

from config import DEFAULT_USER_AGENT, get_logger
from telemetry import trace_span
from utils import collapse_whitespace, create_excerpt, get_entry_value, truncate_text

logger = get_logger("excerpt")

# Paragraphs that are bylines, dates or share prompts rather than prose
BOILERPLATE_RE = re.compile(r'^\d{4}|^by\s|^posted|^published|^share|^comment', re.IGNORECASE)


def extract_page_excerpt(html: str, min_length: int = 80, max_length: int = 300) -> str:
    """First paragraph of a page that reads like article prose.

    Returns '' when the page has no paragraph longer than min_length that
    isn't boilerplate.
    """
    if not html:
        return ""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        soup = BeautifulSoup(html, "html.parser")
    for paragraph in soup.find_all("p"):
        text = collapse_whitespace(paragraph.get_text())
        if len(text) > min_length and not BOILERPLATE_RE.match(text):
            return truncate_text(text, max_length)
    return ""


def feed_excerpt(entry, max_length: int = 300) -> str:
    """Excerpt from the item's own content, summary or description."""
    content = ""
    entries = get_entry_value(entry, 'content')
    if entries:
        for content_item in entries:
            value = get_entry_value(content_item, 'value')
            if value:
                content = value
                break
    if not content:
        content = get_entry_value(entry, 'summary') or get_entry_value(entry, 'description') or ""
    return create_excerpt(content, max_length)


class PageExcerptBudget:
    """Per-source cap on page scrape attempts within one run."""

    def __init__(self, limit: int):
        self.remaining = max(0, int(limit))
        self.used = 0

    def take(self) -> bool:
        if self.remaining <= 0:
            return False
        self.remaining -= 1
        self.used += 1
        return True


class ExcerptResolver:
    """Resolves item excerpts; page fetches share one process-wide concurrency limit."""

    def __init__(self, max_length: int = 300, fetch_pages: bool = True, max_pages_per_source: int = 3,
                 concurrency: int = 4, page_timeout: float = 10.0, min_length: int = 80,
                 user_agent: str = DEFAULT_USER_AGENT):
        self.max_length = max_length
        self.fetch_pages = fetch_pages
        self.max_pages_per_source = max_pages_per_source
        self.page_timeout = page_timeout
        self.min_length = min_length
        self.user_agent = user_agent
        self._semaphore = Semaphore(max(1, concurrency))

    @classmethod
    def from_config(cls, config) -> "ExcerptResolver":
        return cls(
            max_length=config.EXCERPT_MAX_LENGTH,
            fetch_pages=config.FETCH_PAGE_EXCERPTS,
            max_pages_per_source=config.MAX_PAGE_EXCERPTS_PER_SOURCE,
            concurrency=config.EXCERPT_CONCURRENCY,
            page_timeout=config.PAGE_EXCERPT_TIMEOUT,
            min_length=config.PAGE_EXCERPT_MIN_LENGTH,
            user_agent=config.USER_AGENT,
        )

    def new_budget(self) -> PageExcerptBudget:
        return PageExcerptBudget(self.max_pages_per_source if self.fetch_pages else 0)

    async def resolve(self, entry, link: str, existing_excerpt: Optional[str], is_new: bool,
                      session: Optional[ClientSession], budget: PageExcerptBudget) -> str:
        """Excerpt for one item; never raises."""
        excerpt = feed_excerpt(entry, self.max_length)
        if excerpt:
            return excerpt
        if existing_excerpt:
            return existing_excerpt
        if not is_new or session is None or not link.startswith(("http://", "https://")):
            return ""
        if not budget.take():
            return ""
        return await self.fetch_page_excerpt(link, session)

    @trace_span(
        "excerpt.fetch_page",
        tracer_name="excerpt",
        attr_from_args=lambda self, url, session: {"http.url": url},
    )
    async def fetch_page_excerpt(self, url: str, session: ClientSession) -> str:
        """Fetch the linked page and extract its first meaningful paragraph ('' on any failure)."""
        async with self._semaphore:
            try:
                async with session.get(
                    url,
                    headers={'User-Agent': self.user_agent},
                    timeout=ClientTimeout(total=self.page_timeout),
                ) as response:
                    if response.status != 200:
                        logger.debug(f"Page excerpt skipped for {url}: HTTP {response.status}")
                        return ""
                    html = await response.text(errors="replace")
            except TimeoutError:
                logger.debug(f"Page excerpt timed out for {url}")
                return ""
            except (ClientError, OSError, ValueError, UnicodeDecodeError) as e:
                logger.debug(f"Page excerpt failed for {url}: {e}")
                return ""
        return extract_page_excerpt(html, self.min_length, self.max_length)
