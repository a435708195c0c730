#!/usr/bin/env python3
"""
Feed fetch orchestrator.

Fetches every registered source, turns feed items into normalized posts and
reports one fetch log row per source. Ordinary sources are fetched concurrently
under a bounded pool; rate-limit-sensitive sources go through the relay in
small batches with a pause between batches. A failing source never affects
its siblings, and a malformed item never affects the rest of its feed.
"""

from asyncio import Semaphore, gather, get_running_loop, sleep
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from time import monotonic
from typing import Any, Dict, List, Optional, Tuple
import traceback

import feedparser
from aiohttp import ClientSession

from config import get_logger
from dates import DateResolver
from errors import ItemProcessingError, SourceFetchError
from excerpt import ExcerptResolver
from identity import PostSnapshot, generate_post_id, get_post_key, make_lookup_key
from models import STATUS_ERROR, STATUS_OK, FetchLogRow, Post, Source, SourceResult, utc_now_iso
from relay import FetchPolicy
from telemetry import trace_span
from utils import canonicalize_url, coerce_to_string, get_entry_value, strip_html

logger = get_logger("fetcher")

UNTITLED = "Untitled"


@dataclass
class _NormalizedItem:
    entry: Any
    index: int
    post_id: str
    lookup_key: str
    title: str
    link: str
    existing: Optional[Post]


@dataclass
class ItemStats:
    """Per-source item counters for the summary log line."""
    processed: int = 0
    kept: int = 0
    undated: int = 0
    invalid: int = 0
    duplicates: int = 0
    page_excerpts: int = 0

    def describe(self) -> str:
        return (
            f"{self.kept}/{self.processed} kept "
            f"(undated={self.undated}, invalid={self.invalid}, duplicates={self.duplicates}, "
            f"page excerpts={self.page_excerpts})"
        )


class FeedFetcher:
    """Fetches sources and normalizes their items into posts."""

    def __init__(self, config, policy: Optional[FetchPolicy] = None,
                 date_resolver: Optional[DateResolver] = None,
                 excerpt_resolver: Optional[ExcerptResolver] = None,
                 sleeper=sleep) -> None:
        self.config = config
        self.policy = policy or FetchPolicy.from_config(config)
        self.dates = date_resolver or DateResolver.from_config(config)
        self.excerpts = excerpt_resolver or ExcerptResolver.from_config(config)
        self._sleep = sleeper
        self.executor = ThreadPoolExecutor()

    async def close(self) -> None:
        """Release the parser thread pool."""
        if self.executor:
            self.executor.shutdown(wait=False)
            self.executor = None

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    def partition_sources(self, sources: List[Source]) -> Tuple[List[Source], List[Source]]:
        """Split sources into (direct, rate-limit-sensitive), preserving registry order."""
        direct: List[Source] = []
        sensitive: List[Source] = []
        for source in sources:
            (sensitive if self.policy.is_sensitive(source) else direct).append(source)
        return direct, sensitive

    @trace_span(
        "fetcher.fetch_all",
        tracer_name="fetcher",
        attr_from_args=lambda self, sources, snapshot=None, session=None: {"feed.sources.count": len(sources)},
    )
    async def fetch_all(self, sources: List[Source], snapshot: Optional[PostSnapshot] = None,
                        session: Optional[ClientSession] = None) -> List[SourceResult]:
        """Fetch every source; results come back in registry order."""
        if snapshot is None:
            snapshot = PostSnapshot()
        if session is None:
            async with ClientSession() as own_session:
                return await self._fetch_all(sources, snapshot, own_session)
        return await self._fetch_all(sources, snapshot, session)

    async def _fetch_all(self, sources: List[Source], snapshot: PostSnapshot,
                         session: ClientSession) -> List[SourceResult]:
        direct, sensitive = self.partition_sources(sources)
        logger.info(
            f"Fetching {len(sources)} sources ({len(direct)} direct, {len(sensitive)} via relay in batches "
            f"of {self.config.SENSITIVE_BATCH_SIZE})"
        )

        semaphore = Semaphore(self.config.FEED_CONCURRENCY)

        async def fetch_with_semaphore(source: Source) -> SourceResult:
            async with semaphore:
                return await self.fetch_source(source, session, snapshot)

        direct_results, sensitive_results = await gather(
            gather(*[fetch_with_semaphore(source) for source in direct]),
            self._fetch_sensitive(sensitive, session, snapshot),
        )

        by_id: Dict[str, SourceResult] = {r.source.id: r for r in list(direct_results) + list(sensitive_results)}
        return [by_id[source.id] for source in sources]

    async def _fetch_sensitive(self, sources: List[Source], session: ClientSession,
                               snapshot: PostSnapshot) -> List[SourceResult]:
        """Relay-routed sources: parallel within a batch, a fixed pause between batches."""
        results: List[SourceResult] = []
        batch_size = self.config.SENSITIVE_BATCH_SIZE
        delay = self.config.SENSITIVE_BATCH_DELAY
        batches = [sources[i:i + batch_size] for i in range(0, len(sources), batch_size)]
        for number, batch in enumerate(batches):
            if number > 0 and delay > 0:
                logger.info(f"Waiting {delay:g}s before relay batch {number + 1}/{len(batches)}")
                await self._sleep(delay)
            results.extend(await gather(*[self.fetch_source(source, session, snapshot) for source in batch]))
        return results

    @trace_span(
        "fetcher.fetch_source",
        tracer_name="fetcher",
        attr_from_args=lambda self, source, session, snapshot: {
            "feed.source_id": source.id,
            "feed.url": source.feed_url,
        },
    )
    async def fetch_source(self, source: Source, session: ClientSession, snapshot: PostSnapshot) -> SourceResult:
        """Fetch and normalize one source. Never raises; failures become an error log row."""
        strategy = self.policy.strategy_for(source)
        logger.info(f"Fetching: {source.name} ({source.feed_url}) [{strategy.name}]")
        start = monotonic()
        try:
            response = await strategy.fetch(source, session)
            parsed = await self.parse_feed(source, response.content)
            posts, stats = await self.process_entries(source, parsed, session, snapshot)
        except SourceFetchError as e:
            return self._error_result(source, str(e), start)
        except Exception as e:
            logger.error(f"Unexpected error processing source {source.id}: {e}")
            logger.debug(traceback.format_exc())
            return self._error_result(source, f"Unexpected error: {e}", start)

        latency_ms = int((monotonic() - start) * 1000)
        logger.info(f"  ✓ {source.id}: {stats.describe()} via {response.via} in {latency_ms}ms")
        return SourceResult(
            source=source,
            posts=posts,
            log=FetchLogRow(
                source_id=source.id,
                status=STATUS_OK,
                post_count=len(posts),
                latency_ms=latency_ms,
                error=None,
            ),
        )

    def _error_result(self, source: Source, message: str, start: float) -> SourceResult:
        latency_ms = int((monotonic() - start) * 1000)
        logger.error(f"  ✗ Error fetching {source.name}: {message}")
        return SourceResult(
            source=source,
            posts=[],
            log=FetchLogRow(
                source_id=source.id,
                status=STATUS_ERROR,
                post_count=0,
                latency_ms=latency_ms,
                error=message or "Unknown error",
            ),
        )

    async def parse_feed(self, source: Source, content: bytes):
        """Parse feed bytes with feedparser (in a worker thread).

        Raises:
            SourceFetchError: when the body is not a feed at all
        """
        parsed = await self.run_in_executor(
            lambda c: feedparser.parse(c, sanitize_html=True, resolve_relative_uris=True),
            content,
        )
        entries = parsed.get('entries') or []
        if parsed.get('bozo') and not entries:
            raise SourceFetchError(f"Feed parse error: {parsed.get('bozo_exception', 'not a feed')}")
        if parsed.get('bozo'):
            logger.warning(f"Feed parsing warning for {source.id}: {parsed.get('bozo_exception')}")
        logger.debug(f"Feed {source.id} parsed as {parsed.get('version') or 'Unknown'} format")
        return parsed

    def normalize_entry(self, source: Source, entry, index: int, snapshot: PostSnapshot) -> _NormalizedItem:
        """Identity, canonical link and title for one item.

        Raises:
            ItemProcessingError: when the item has nothing to identify it by
        """
        raw_link = coerce_to_string(get_entry_value(entry, 'link')).strip()
        guid = get_entry_value(entry, 'id') or get_entry_value(entry, 'guid')
        raw_title = get_entry_value(entry, 'title')

        key = get_post_key(link=raw_link, guid=guid, title=raw_title, base_url=source.url)
        if not key:
            raise ItemProcessingError(f"item #{index} has no link, guid or title")

        lookup_key = make_lookup_key(source.id, key)
        post_id = generate_post_id(source.id, key)
        existing = snapshot.find(post_id, lookup_key)
        if existing is not None:
            post_id = existing.id

        return _NormalizedItem(
            entry=entry,
            index=index,
            post_id=post_id,
            lookup_key=lookup_key,
            title=strip_html(raw_title) or UNTITLED,
            link=canonicalize_url(raw_link, source.url) or raw_link or source.url,
            existing=existing,
        )

    @trace_span(
        "fetcher.process_entries",
        tracer_name="fetcher",
        attr_from_args=lambda self, source, parsed, session, snapshot: {
            "feed.source_id": source.id,
            "feed.entries.count": len(parsed.get('entries') or []),
        },
    )
    async def process_entries(self, source: Source, parsed, session: Optional[ClientSession],
                              snapshot: PostSnapshot) -> Tuple[List[Post], ItemStats]:
        """Turn parsed feed entries into posts for one source."""
        max_items = source.max_items or self.config.DEFAULT_MAX_ITEMS
        entries = list(parsed.get('entries') or [])[:max_items]
        feed_header = parsed.get('feed') or {}
        stats = ItemStats(processed=len(entries))
        now = self.dates.now()

        # FIRST PASS: identity and date for every item
        seen = set()
        seen_ids = set()
        candidates: List[Tuple[_NormalizedItem, str]] = []
        for index, entry in enumerate(entries):
            try:
                item = self.normalize_entry(source, entry, index, snapshot)
                if item.lookup_key in seen or item.post_id in seen_ids:
                    stats.duplicates += 1
                    continue
                seen.add(item.lookup_key)
                seen_ids.add(item.post_id)
                date = self.dates.resolve(
                    entry,
                    feed_header,
                    source,
                    index,
                    existing_date=item.existing.date if item.existing else None,
                    now=now,
                )
            except ItemProcessingError as e:
                stats.invalid += 1
                logger.warning(f"Skipping item in {source.id}: {e}")
                continue
            except Exception as e:
                stats.invalid += 1
                logger.warning(f"Skipping malformed item #{index} in {source.id}: {e}")
                continue

            if date is None:
                stats.undated += 1
                logger.info(f"    → Skipping \"{item.title[:40]}\" in {source.id} (no date)")
                continue
            candidates.append((item, date))

        # SECOND PASS: excerpts, page fetches capped per source
        budget = self.excerpts.new_budget()
        excerpts = await gather(
            *[
                self.excerpts.resolve(
                    item.entry,
                    item.link,
                    item.existing.excerpt if item.existing else None,
                    item.existing is None,
                    session,
                    budget,
                )
                for item, _ in candidates
            ],
            return_exceptions=True,
        )
        stats.page_excerpts = budget.used

        fetched_at = utc_now_iso()
        posts: List[Post] = []
        for (item, date), excerpt in zip(candidates, excerpts):
            if isinstance(excerpt, BaseException):
                logger.debug(f"Excerpt failed for {item.link}: {excerpt}")
                excerpt = ""
            posts.append(Post(
                id=item.post_id,
                source_id=source.id,
                title=item.title,
                link=item.link,
                date=date,
                excerpt=excerpt,
                fetched_at=fetched_at,
            ))
        stats.kept = len(posts)
        return posts, stats
