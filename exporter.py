#!/usr/bin/env python3
"""
Cache exporter and publisher.

Projects the store into the two read-optimized artifacts consumed by the site:

- posts.json: {"lastUpdated", "posts": [...]} newest first
- status.json: {"lastUpdated", "feeds": [...], "summary": {...}} latest fetch per source

Artifacts are written atomically (temp file + os.replace) so readers never see a
half-written file, and are only copied to the public directory by
publish_artifacts() after they pass verification.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import json
import os
import shutil
import tempfile

from config import get_logger
from dates import parse_iso, to_iso
from identity import sort_posts
from models import STATUS_ERROR, STATUS_OK, DatabaseQueue, FetchLogRow, Post
from telemetry import trace_span

logger = get_logger("exporter")

POSTS_FILENAME = "posts.json"
STATUS_FILENAME = "status.json"
ARTIFACT_FILENAMES = (POSTS_FILENAME, STATUS_FILENAME)


def _write_atomic(target: Path, write: Callable[[Any], None]) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode='w',
        encoding='utf-8',
        suffix=target.suffix,
        dir=target.parent,
        delete=False,
    ) as temp_file:
        write(temp_file)
        temp_file.flush()
        os.fsync(temp_file.fileno())
        temp_path = temp_file.name
    os.replace(temp_path, target)


def write_json_atomic(target: Path, data: Dict[str, Any]) -> None:
    """Write JSON (2-space indent) via a temp file in the same directory."""
    _write_atomic(Path(target), lambda f: json.dump(data, f, indent=2, ensure_ascii=False))


def summarize_feeds(feeds: List[Dict[str, Any]]) -> Dict[str, int]:
    """Summary counts recomputed from status rows."""
    return {
        "total": len(feeds),
        "healthy": sum(1 for feed in feeds if feed.get("status") == STATUS_OK),
        "errors": sum(1 for feed in feeds if feed.get("status") == STATUS_ERROR),
    }


def latest_fetched_at(rows: List[FetchLogRow], now: datetime) -> str:
    """Newest fetched_at among rows, or now when there are none."""
    newest = None
    for row in rows:
        fetched = parse_iso(row.fetched_at)
        if fetched and (newest is None or fetched > newest):
            newest = fetched
    return to_iso(newest or now)


class CacheExporter:
    """Builds and writes the exported artifacts from the store (read-only)."""

    def __init__(self, db: DatabaseQueue, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def build_cache(self, posts: Optional[List[Post]] = None) -> Dict[str, Any]:
        if posts is None:
            posts = await self.db.execute('load_posts')
        posts = sort_posts(posts)
        return {
            "lastUpdated": to_iso(self._clock()),
            "posts": [post.to_dict() for post in posts],
        }

    async def build_status(self) -> Dict[str, Any]:
        rows = await self.db.execute('latest_fetch_logs')
        feeds = [row.to_dict() for row in rows]
        return {
            "lastUpdated": latest_fetched_at(rows, self._clock()),
            "feeds": feeds,
            "summary": summarize_feeds(feeds),
        }

    @trace_span("exporter.export", tracer_name="exporter")
    async def export(self, cache_dir: str, posts: Optional[List[Post]] = None) -> Dict[str, Path]:
        """Write posts.json and status.json into cache_dir.

        Args:
            cache_dir: Directory receiving the artifacts
            posts: Already merged post list; read from the store when omitted

        Returns:
            Mapping of artifact filename to written path
        """
        cache = await self.build_cache(posts)
        status = await self.build_status()

        directory = Path(cache_dir)
        paths = {
            POSTS_FILENAME: directory / POSTS_FILENAME,
            STATUS_FILENAME: directory / STATUS_FILENAME,
        }
        write_json_atomic(paths[POSTS_FILENAME], cache)
        write_json_atomic(paths[STATUS_FILENAME], status)

        summary = status["summary"]
        logger.info(
            f"Exported {len(cache['posts'])} posts and {summary['total']} feed statuses "
            f"({summary['healthy']} healthy, {summary['errors']} errors) to {directory}"
        )
        return paths


def publish_artifacts(cache_dir: str, public_dir: str) -> List[Path]:
    """Copy verified artifacts into the public directory, each replaced atomically.

    Raises:
        FileNotFoundError: when an artifact is missing from cache_dir
    """
    source_dir = Path(cache_dir)
    target_dir = Path(public_dir)
    missing = [name for name in ARTIFACT_FILENAMES if not (source_dir / name).is_file()]
    if missing:
        raise FileNotFoundError(f"Missing artifacts in {source_dir}: {', '.join(missing)}")

    published: List[Path] = []
    for name in ARTIFACT_FILENAMES:
        target = target_dir / name
        with open(source_dir / name, 'r', encoding='utf-8') as src:
            _write_atomic(target, lambda f, src=src: shutil.copyfileobj(src, f))
        published.append(target)
    logger.info(f"Published {len(published)} artifacts to {target_dir}")
    return published
