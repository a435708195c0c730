#!/usr/bin/env python3
"""
Structural verification of exported artifacts.

Run before publishing: structural violations (missing or malformed artifacts,
bad posts, duplicate ids, unsorted posts, inconsistent summary counts) fail
the check; staleness signals are reported as warnings only.

Usage:
    python verifier.py [--cache-dir DIR] [--db PATH] [--sources PATH]
"""

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from sqlite3 import connect, Error
from typing import Any, Dict, List, Optional
import argparse
import json
import sys

from config import Config, get_logger, setup_logging
from dates import parse_iso
from errors import VerificationFailure
from exporter import POSTS_FILENAME, STATUS_FILENAME, summarize_feeds
from models import STATUS_ERROR, STATUS_OK, load_sources
from telemetry import trace_span

logger = get_logger("verifier")

MAX_LAST_UPDATED_DRIFT = timedelta(hours=1)


@dataclass
class VerificationReport:
    """Outcome of one verification pass."""
    failures: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def fail(self, message: str) -> None:
        self.failures.append(message)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def raise_for_failures(self) -> None:
        """Raise VerificationFailure carrying this report when any check failed."""
        if self.failures:
            raise VerificationFailure(
                f"{len(self.failures)} verification failure(s): {self.failures[0]}",
                report=self,
            )

    def log(self) -> None:
        for message in self.failures:
            logger.error(f"VERIFY FAIL: {message}")
        for message in self.warnings:
            logger.warning(f"VERIFY WARN: {message}")
        if self.ok:
            details = ", ".join(f"{key}={value}" for key, value in self.stats.items())
            logger.info(f"VERIFY OK: {details}")


def _load_json(file_path: Path, report: VerificationReport) -> Optional[Dict[str, Any]]:
    if not file_path.is_file():
        report.fail(f"Missing artifact: {file_path}")
        return None
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        report.fail(f"Cannot parse {file_path}: {e}")
        return None
    if not isinstance(data, dict):
        report.fail(f"{file_path.name} must contain a JSON object")
        return None
    return data


def _count_store_posts(database_path: str) -> int:
    """Post count from the store, opened read-only."""
    if not Path(database_path).is_file():
        raise FileNotFoundError(f"store not found at {database_path}")
    conn = connect(f"file:{Path(database_path).resolve()}?mode=ro", uri=True)
    try:
        row = conn.execute("SELECT COUNT(*) FROM posts").fetchone()
        return int(row[0]) if row else 0
    finally:
        conn.close()


def _check_posts(posts: List[Any], report: VerificationReport) -> None:
    seen_ids = set()
    duplicate_ids = set()
    previous_date = None
    for index, post in enumerate(posts):
        if not isinstance(post, dict) or not post.get("id"):
            report.fail(f"Post at index {index} has no id")
            continue
        post_id = post["id"]
        if post_id in seen_ids:
            duplicate_ids.add(post_id)
        seen_ids.add(post_id)
        for key in ("sourceId", "title", "link"):
            if not post.get(key):
                report.fail(f"Post {post_id} missing {key}")
        date = parse_iso(post.get("date"))
        if date is None:
            report.fail(f"Post {post_id} has invalid date: {post.get('date')}")
            continue
        if previous_date is not None and date > previous_date:
            report.fail(f"Posts are not sorted newest first at index {index - 1}/{index}")
        previous_date = date
    if duplicate_ids:
        report.fail(f"Duplicate post ids detected ({len(duplicate_ids)})")


def _check_feeds(feeds: List[Any], summary: Any, report: VerificationReport) -> None:
    seen_sources = set()
    for feed in feeds:
        if not isinstance(feed, dict) or not feed.get("sourceId"):
            report.fail("Found status row without sourceId")
            continue
        source_id = feed["sourceId"]
        if source_id in seen_sources:
            report.fail(f"Duplicate status row for sourceId={source_id}")
        seen_sources.add(source_id)
        if feed.get("status") not in (STATUS_OK, STATUS_ERROR):
            report.warn(f"Unexpected feed status \"{feed.get('status')}\" for {source_id}")
        if parse_iso(feed.get("fetchedAt")) is None:
            report.fail(f"Feed {source_id} has invalid fetchedAt")

    summary = summary if isinstance(summary, dict) else {}
    expected = summarize_feeds([f for f in feeds if isinstance(f, dict)])
    expected["total"] = len(feeds)
    for key in ("total", "healthy", "errors"):
        if summary.get(key) != expected[key]:
            report.fail(f"status.summary.{key} ({summary.get(key)}) != computed ({expected[key]})")


@trace_span("verifier.verify_artifacts", tracer_name="verifier")
def verify_artifacts(cache_dir: str, database_path: Optional[str] = None,
                     expected_sources: Optional[int] = None) -> VerificationReport:
    """Check exported artifacts before they are published.

    Args:
        cache_dir: Directory holding posts.json and status.json
        database_path: Store to cross-check post counts against (optional)
        expected_sources: Number of registry sources (optional)
    """
    report = VerificationReport()
    directory = Path(cache_dir)

    posts_cache = _load_json(directory / POSTS_FILENAME, report)
    status_cache = _load_json(directory / STATUS_FILENAME, report)
    if posts_cache is None or status_cache is None:
        return report

    posts = posts_cache.get("posts")
    feeds = status_cache.get("feeds")
    if not isinstance(posts, list):
        report.fail(f"{POSTS_FILENAME} missing `posts` array")
    if not isinstance(feeds, list):
        report.fail(f"{STATUS_FILENAME} missing `feeds` array")
    if not isinstance(posts, list) or not isinstance(feeds, list):
        return report

    last_updated = parse_iso(posts_cache.get("lastUpdated"))
    if last_updated is None:
        report.fail(f"{POSTS_FILENAME} `lastUpdated` is missing/invalid")
    if parse_iso(status_cache.get("lastUpdated")) is None:
        report.fail(f"{STATUS_FILENAME} `lastUpdated` is missing/invalid")

    if not posts:
        report.fail("posts cache is empty")
    if not feeds:
        report.fail("status feeds list is empty")

    _check_posts(posts, report)
    _check_feeds(feeds, status_cache.get("summary"), report)

    if expected_sources and len(feeds) != expected_sources:
        report.warn(f"Feed status count ({len(feeds)}) != configured sources count ({expected_sources})")

    newest = parse_iso(posts[0].get("date")) if posts and isinstance(posts[0], dict) else None
    if newest and last_updated and newest > last_updated + MAX_LAST_UPDATED_DRIFT:
        report.warn(f"{POSTS_FILENAME} lastUpdated is older than newest post date by >1h")

    healthy = sum(1 for f in feeds if isinstance(f, dict) and f.get("status") == STATUS_OK)
    report.stats = {
        "posts": len(posts),
        "feeds": len(feeds),
        "healthy": healthy,
        "errors": len(feeds) - healthy,
    }

    if database_path:
        try:
            store_count = _count_store_posts(database_path)
        except (Error, OSError) as e:
            report.warn(f"SQLite verification skipped: {e}")
        else:
            report.stats["db_posts"] = store_count
            if store_count < len(posts):
                report.warn(
                    f"SQLite posts count ({store_count}) is less than cache posts count ({len(posts)}); "
                    "local DB may be stale"
                )
    return report


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Verify exported feed artifacts before publishing")
    parser.add_argument("--cache-dir", help="Directory holding posts.json and status.json")
    parser.add_argument("--db", help="Store path to cross-check post counts against")
    parser.add_argument("--sources", help="Source registry used for the feed count check")
    args = parser.parse_args(argv)

    config = Config.from_environment()
    setup_logging(config.LOG_LEVEL, config.LOG_TIMESTAMPS)

    sources = load_sources(args.sources or config.SOURCES_PATH)
    report = verify_artifacts(
        args.cache_dir or config.CACHE_DIR,
        database_path=args.db or config.DATABASE_PATH,
        expected_sources=len(sources) or None,
    )
    report.log()
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
