#!/usr/bin/env python3
"""
Feed Ingestion Pipeline Orchestrator

Runs the ingestion pipeline in sequence:
1. Fetch every registered source and merge its items into the store
2. Export the store as posts.json and status.json
3. Verify the exported artifacts
4. Publish them to the public directory (only when verification passed)

A store write failure stops the run before anything is exported; a failed
verification stops it before anything is published.
"""

import asyncio
import argparse
import json
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from config import Config, get_logger, setup_logging
from dates import parse_date_value, to_iso
from errors import StoreError, VerificationFailure
from exporter import POSTS_FILENAME, STATUS_FILENAME, CacheExporter, publish_artifacts
from fetcher import FeedFetcher
from identity import PostSnapshot, merge_posts
from models import DatabaseQueue, FetchLogRow, Post, Source, SourceResult, load_sources
from telemetry import init_telemetry, trace_span
from verifier import VerificationReport, verify_artifacts

# Module-specific logger
logger = get_logger("orchestrator")

BACKFILL_DEFAULTS = {
    "max_items": 100,
    "timeout": 45.0,
    "concurrency": 4,
    "excerpt_concurrency": 3,
}


@dataclass
class FetchReport:
    """What one fetch pass produced."""
    results: List[SourceResult] = field(default_factory=list)
    posts: List[Post] = field(default_factory=list)

    @property
    def fresh_count(self) -> int:
        return sum(len(r.posts) for r in self.results)

    @property
    def healthy(self) -> int:
        return sum(1 for r in self.results if r.log.ok)

    @property
    def errors(self) -> int:
        return len(self.results) - self.healthy


class IngestPipeline:
    """Orchestrates the ingestion pipeline for one configuration."""

    def __init__(self, config: Config,
                 fetcher_factory: Optional[Callable[[Config], FeedFetcher]] = None) -> None:
        self.config = config
        self._fetcher_factory = fetcher_factory or FeedFetcher

    def open_store(self) -> DatabaseQueue:
        Path(self.config.DATABASE_PATH).parent.mkdir(parents=True, exist_ok=True)
        return DatabaseQueue.from_config(self.config)

    def load_sources(self, only: Optional[List[str]] = None) -> List[Source]:
        sources = load_sources(self.config.SOURCES_PATH)
        if only:
            wanted = set(only)
            sources = [s for s in sources if s.id in wanted]
        return sources

    @trace_span(
        "pipeline.fetch",
        tracer_name="orchestrator",
        attr_from_args=lambda self, db, sources: {"feed.sources.count": len(sources)},
    )
    async def fetch_into(self, db: DatabaseQueue, sources: List[Source]) -> FetchReport:
        """Fetch all sources and write posts and fetch logs to the store.

        Raises:
            StoreError: when the store cannot be read or written
        """
        await db.execute('upsert_sources', sources=sources)
        existing = await db.execute('load_posts')
        snapshot = PostSnapshot(existing, source_urls={source.id: source.url for source in sources})
        logger.info(f"Loaded {len(snapshot)} existing posts from the store")

        fetcher = self._fetcher_factory(self.config)
        try:
            results = await fetcher.fetch_all(sources, snapshot)
        finally:
            await fetcher.close()

        fresh = [post for result in results for post in result.posts]
        await db.execute('upsert_posts', posts=fresh)
        await db.execute('insert_fetch_logs', rows=[result.log for result in results])

        report = FetchReport(results=results, posts=merge_posts(existing, fresh))
        logger.info(
            f"Fetched {report.fresh_count} posts from {len(results)} sources "
            f"({report.healthy} healthy, {report.errors} errors); store now holds {len(report.posts)} posts"
        )
        return report

    async def run_fetcher(self, only: Optional[List[str]] = None) -> bool:
        """Run the fetch step on its own."""
        logger.info("📡 Running feed fetcher")
        sources = self.load_sources(only)
        if not sources:
            logger.error("❌ No sources found in registry")
            return False
        try:
            async with self.open_store() as db:
                await self.fetch_into(db, sources)
        except StoreError as e:
            logger.error(f"💀 Store write failed: {e}")
            return False
        logger.info("✅ Feed fetcher completed successfully")
        return True

    async def run_exporter(self) -> bool:
        """Export the store to the cache directory."""
        logger.info("📦 Exporting cache artifacts")
        try:
            async with self.open_store() as db:
                await CacheExporter(db).export(self.config.CACHE_DIR)
        except (StoreError, OSError) as e:
            logger.error(f"❌ Export failed: {e}")
            return False
        logger.info("✅ Export completed successfully")
        return True

    def run_verifier(self) -> VerificationReport:
        logger.info("🔍 Verifying cache artifacts")
        sources = load_sources(self.config.SOURCES_PATH)
        report = verify_artifacts(
            self.config.CACHE_DIR,
            database_path=self.config.DATABASE_PATH,
            expected_sources=len(sources) or None,
        )
        report.log()
        return report

    def run_publisher(self) -> bool:
        """Verify, then publish. Previously published artifacts stay untouched on failure."""
        try:
            self.run_verifier().raise_for_failures()
        except VerificationFailure as e:
            logger.error(f"🛑 Not publishing: {e}")
            return False
        logger.info("🚚 Publishing verified artifacts")
        try:
            publish_artifacts(self.config.CACHE_DIR, self.config.PUBLIC_DIR)
        except OSError as e:
            logger.error(f"❌ Publish failed: {e}")
            return False
        logger.info("✅ Publish completed successfully")
        return True

    @trace_span(
        "pipeline.run",
        tracer_name="orchestrator",
        attr_from_args=lambda self, publish=True, only=None: {
            "pipeline.publish": bool(publish),
            "feed.only": ",".join(only) if only else "",
        },
    )
    async def run_pipeline(self, publish: bool = True, only: Optional[List[str]] = None) -> bool:
        """Run fetch, export, verify and publish.

        Returns:
            True if all steps succeeded, False otherwise
        """
        logger.info("🚀 Starting feed ingestion pipeline")
        logger.info(
            f"Paths: DATABASE_PATH={self.config.DATABASE_PATH} SOURCES_PATH={self.config.SOURCES_PATH} "
            f"CACHE_DIR={self.config.CACHE_DIR} PUBLIC_DIR={self.config.PUBLIC_DIR}"
        )
        logger.info(f"Fetch config: {self.config.format_summary()}")
        for warning in self.config.warnings:
            logger.warning(f"⚠️ Config: {warning}")
        start_time = time.time()

        sources = self.load_sources(only)
        if not sources:
            logger.error("❌ No sources found in registry")
            return False

        try:
            async with self.open_store() as db:
                logger.info("📡 Running feed fetcher")
                fetched = await self.fetch_into(db, sources)
                logger.info("📦 Exporting cache artifacts")
                await CacheExporter(db).export(self.config.CACHE_DIR, posts=fetched.posts)
        except StoreError as e:
            logger.error(f"💀 Store failure, no artifacts exported: {e}")
            return False
        except OSError as e:
            logger.error(f"❌ Export failed: {e}")
            return False

        if publish:
            if not self.run_publisher():
                return False
        else:
            report = self.run_verifier()
            if not report.ok:
                return False

        elapsed_time = time.time() - start_time
        logger.info(f"🎉 Pipeline completed successfully in {elapsed_time:.1f}s")
        return True

    async def import_cache(self, force: bool = False) -> bool:
        """Seed the store from previously exported artifacts.

        Posts are imported when the store has none (or force is set); fetch
        log rows likewise when the store has no fetch history.
        """
        logger.info("📥 Importing cache artifacts into the store")
        sources = self.load_sources()
        if not sources:
            logger.error("❌ No sources found in registry")
            return False
        known = {source.id for source in sources}
        cache_dir = Path(self.config.CACHE_DIR)

        try:
            async with self.open_store() as db:
                await db.execute('upsert_sources', sources=sources)

                if force or await db.execute('count_posts') == 0:
                    cache = _read_json(cache_dir / POSTS_FILENAME)
                    posts = _posts_from_cache(cache, known)
                    if posts:
                        await db.execute('upsert_posts', posts=posts)
                        logger.info(f"Imported {len(posts)} posts into SQLite")
                    else:
                        logger.info(f"No {POSTS_FILENAME} cache found to import")
                else:
                    logger.info("Posts table already populated. Use --force to re-import.")

                if force or not await db.execute('has_fetch_logs'):
                    status = _read_json(cache_dir / STATUS_FILENAME)
                    rows = _fetch_logs_from_status(status, known)
                    if rows:
                        await db.execute('insert_fetch_logs', rows=rows)
                        logger.info(f"Imported {len(rows)} fetch log rows")
                    else:
                        logger.info(f"No {STATUS_FILENAME} cache found to import")
                else:
                    logger.info("Fetch log already populated. Use --force to re-import.")
        except StoreError as e:
            logger.error(f"💀 Import failed: {e}")
            return False
        logger.info("✅ Import completed successfully")
        return True

    async def check_status(self) -> Dict[str, Any]:
        """Collect store counts, per-source health and artifact presence."""
        logger.info("📊 Checking system status")
        status: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'checks': {},
        }

        if Path(self.config.DATABASE_PATH).exists():
            try:
                async with self.open_store() as db:
                    logs = await db.execute('latest_fetch_logs')
                    status['checks']['database'] = {
                        'status': 'ok',
                        'sources': await db.execute('count_sources'),
                        'posts': await db.execute('count_posts'),
                        'healthy': sum(1 for row in logs if row.ok),
                        'errors': sum(1 for row in logs if not row.ok),
                        'failing': [row.source_id for row in logs if not row.ok],
                    }
            except StoreError as e:
                status['checks']['database'] = {'status': 'error', 'message': str(e)}
        else:
            status['checks']['database'] = {'status': 'missing', 'message': 'Database file not found'}

        status['checks']['artifacts'] = {
            'cache': {name: (Path(self.config.CACHE_DIR) / name).is_file() for name in (POSTS_FILENAME, STATUS_FILENAME)},
            'public': {name: (Path(self.config.PUBLIC_DIR) / name).is_file() for name in (POSTS_FILENAME, STATUS_FILENAME)},
        }

        all_ok = (
            status['checks']['database'].get('status') == 'ok'
            and all(status['checks']['artifacts']['cache'].values())
        )
        status['overall_status'] = 'healthy' if all_ok else 'issues_detected'
        return status

    def print_status(self, status: Dict[str, Any]) -> None:
        """Print formatted status information."""
        print("\n📊 Feed Ingestion Status")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")

        db = status['checks']['database']
        if db['status'] == 'ok':
            print("\n💾 Database:")
            print(f"   📚 Sources: {db['sources']}")
            print(f"   📰 Posts: {db['posts']}")
            print(f"   ✅ Healthy: {db['healthy']}")
            print(f"   ❌ Errors: {db['errors']}")
            if db['failing']:
                print(f"   🔥 Failing: {', '.join(db['failing'])}")
        else:
            print(f"\n💾 Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")

        artifacts = status['checks']['artifacts']
        print("\n📁 Artifacts:")
        for location in ('cache', 'public'):
            present = [name for name, exists in artifacts[location].items() if exists]
            print(f"   {location}: {', '.join(present) if present else 'none'}")


def _read_json(file_path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.debug(f"Cannot read {file_path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def _posts_from_cache(cache: Optional[Dict[str, Any]], known_sources: set) -> List[Post]:
    if not cache:
        return []
    fetched_at = cache.get('lastUpdated') or ''
    posts: List[Post] = []
    for raw in cache.get('posts') or []:
        try:
            post = Post.from_dict(raw, fetched_at=fetched_at)
        except (KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Skipping malformed cached post: {e}")
            continue
        if post.source_id not in known_sources:
            logger.warning(f"Skipping cached post {post.id} for unknown source {post.source_id}")
            continue
        # older caches carry RFC 822 or offset dates
        resolved = parse_date_value(post.date)
        if resolved is None:
            logger.warning(f"Skipping cached post {post.id} with unparseable date {post.date!r}")
            continue
        post.date = to_iso(resolved)
        posts.append(post)
    return posts


def _fetch_logs_from_status(status: Optional[Dict[str, Any]], known_sources: set) -> List[FetchLogRow]:
    if not status:
        return []
    rows: List[FetchLogRow] = []
    for feed in status.get('feeds') or []:
        if not isinstance(feed, dict):
            continue
        source_id = feed.get('sourceId') or feed.get('blogId')
        if source_id not in known_sources:
            continue
        rows.append(FetchLogRow(
            source_id=source_id,
            status=feed.get('status') or 'error',
            post_count=int(feed.get('postCount') or 0),
            latency_ms=feed.get('latencyMs'),
            error=feed.get('error'),
            fetched_at=feed.get('fetchedAt') or feed.get('lastFetched') or status.get('lastUpdated') or '',
        ))
    return rows


def backfill_config(config: Config, args) -> Config:
    """Config for a backfill run: deeper item cap, longer timeout, gentler pools."""
    return config.with_overrides(
        DEFAULT_MAX_ITEMS=args.max or BACKFILL_DEFAULTS["max_items"],
        FEED_TIMEOUT=args.timeout or BACKFILL_DEFAULTS["timeout"],
        FEED_CONCURRENCY=args.concurrency or BACKFILL_DEFAULTS["concurrency"],
        EXCERPT_CONCURRENCY=args.excerpt_concurrency or BACKFILL_DEFAULTS["excerpt_concurrency"],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Ingestion Pipeline')
    parser.add_argument('mode', choices=['run', 'fetch', 'export', 'verify', 'publish', 'status', 'backfill', 'import-cache'],
                        help='Operation mode')
    parser.add_argument('--no-publish', action='store_true',
                        help='Stop after verification (do not copy artifacts to PUBLIC_DIR)')
    parser.add_argument('--only', type=str,
                        help='Comma-separated source ids to fetch')
    parser.add_argument('--force', action='store_true',
                        help='import-cache: re-import even when the store is already populated')
    parser.add_argument('--max', type=int,
                        help='backfill: max items per source')
    parser.add_argument('--timeout', type=float,
                        help='backfill: per-request timeout in seconds')
    parser.add_argument('--concurrency', type=int,
                        help='backfill: direct fetch concurrency')
    parser.add_argument('--excerpt-concurrency', type=int,
                        help='backfill: page excerpt concurrency')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    config = Config.from_environment()
    setup_logging(config.LOG_LEVEL, config.LOG_TIMESTAMPS)
    init_telemetry(
        config.OTEL_SERVICE_NAME,
        enabled=config.TELEMETRY_ENABLED,
        connection_string=config.TELEMETRY_CONNECTION_STRING,
        environment=config.OTEL_ENVIRONMENT,
    )
    only = [s.strip() for s in args.only.split(',') if s.strip()] if args.only else None

    try:
        if args.mode == 'run':
            success = asyncio.run(IngestPipeline(config).run_pipeline(publish=not args.no_publish, only=only))

        elif args.mode == 'backfill':
            backfill = backfill_config(config, args)
            logger.info(f"🧱 Backfill run: {backfill.format_summary()}")
            success = asyncio.run(IngestPipeline(backfill).run_pipeline(publish=not args.no_publish, only=only))

        elif args.mode == 'fetch':
            success = asyncio.run(IngestPipeline(config).run_fetcher(only=only))

        elif args.mode == 'export':
            success = asyncio.run(IngestPipeline(config).run_exporter())

        elif args.mode == 'verify':
            success = IngestPipeline(config).run_verifier().ok

        elif args.mode == 'publish':
            success = IngestPipeline(config).run_publisher()

        elif args.mode == 'import-cache':
            success = asyncio.run(IngestPipeline(config).import_cache(force=args.force))

        else:
            pipeline = IngestPipeline(config)
            pipeline.print_status(asyncio.run(pipeline.check_status()))
            success = True

    except KeyboardInterrupt:
        logger.info("👋 Pipeline shutting down")
        return 130

    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
