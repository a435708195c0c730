#!/usr/bin/env python3
"""
Database models and operations for the feed ingestion pipeline.

This module contains the record types that flow between the fetcher, the store
and the exporter, the source registry loader, and the SQLite-backed store.
All store access goes through DatabaseQueue.execute() so callers never touch
the connection directly.
"""

from os import path, access, R_OK
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Any, Dict, List, Optional, Sequence

from config import get_logger, safe_read_yaml
from errors import StoreError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

REGISTRY_FILE_SIZE_LIMIT = 5 * 1024 * 1024

STATUS_OK = "ok"
STATUS_ERROR = "error"


def utc_now_iso() -> str:
    """Current UTC time as YYYY-MM-DDTHH:MM:SS.mmmZ."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _first_present(entry: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in entry and entry[key] is not None:
            return entry[key]
    return None


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class Source:
    """A feed registered for ingestion."""
    id: str
    name: str
    url: str
    feed_url: str
    categories: List[str] = field(default_factory=list)
    description: str = ""
    force_proxy: bool = False
    allow_missing_dates: bool = False
    ignore_link_date_inference: bool = False
    allow_link_date_inference: bool = False
    max_items: Optional[int] = None

    @classmethod
    def from_registry(cls, entry: Dict[str, Any]) -> "Source":
        """Build a Source from one registry entry.

        Raises:
            ValueError: when the entry has no id or no feed URL
        """
        if not isinstance(entry, dict):
            raise ValueError("registry entry must be a mapping")
        source_id = str(entry.get("id") or "").strip()
        feed_url = str(_first_present(entry, "feed", "feedUrl", "feed_url") or "").strip()
        if not source_id:
            raise ValueError("registry entry has no id")
        if not feed_url:
            raise ValueError(f"source {source_id} has no feed URL")

        categories = entry.get("categories") or []
        if isinstance(categories, str):
            categories = [categories]
        max_items = _coerce_int(_first_present(entry, "maxPosts", "max_posts", "maxItems"))

        return cls(
            id=source_id,
            name=str(entry.get("name") or source_id).strip(),
            url=str(entry.get("url") or feed_url).strip(),
            feed_url=feed_url,
            categories=[str(c) for c in categories],
            description=str(entry.get("description") or ""),
            force_proxy=bool(_first_present(entry, "proxy", "forceProxy")),
            allow_missing_dates=bool(entry.get("allowMissingDates")),
            ignore_link_date_inference=bool(entry.get("ignoreLinkDateInference")),
            allow_link_date_inference=bool(entry.get("allowLinkDateInference")),
            max_items=max_items if max_items and max_items > 0 else None,
        )


@dataclass
class Post:
    """A normalized feed item, as stored and exported."""
    id: str
    source_id: str
    title: str
    link: str
    date: str
    excerpt: str = ""
    fetched_at: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "sourceId": self.source_id,
            "title": self.title,
            "link": self.link,
            "date": self.date,
            "excerpt": self.excerpt or "",
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fetched_at: str = "") -> "Post":
        """Inverse of to_dict (used when seeding the store from exported artifacts)."""
        return cls(
            id=str(data["id"]),
            source_id=str(_first_present(data, "sourceId", "blogId", "source_id")),
            title=str(data.get("title") or ""),
            link=str(data.get("link") or ""),
            date=str(data["date"]),
            excerpt=str(data.get("excerpt") or ""),
            fetched_at=fetched_at,
        )


@dataclass
class FetchLogRow:
    """Outcome of one fetch attempt for one source."""
    source_id: str
    status: str
    post_count: int = 0
    latency_ms: Optional[int] = None
    error: Optional[str] = None
    fetched_at: str = field(default_factory=utc_now_iso)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "status": self.status,
            "postCount": self.post_count,
            "latencyMs": self.latency_ms,
            "error": self.error,
            "fetchedAt": self.fetched_at,
        }


@dataclass
class SourceResult:
    """Posts produced for one source plus the fetch log row describing the attempt."""
    source: Source
    posts: List[Post]
    log: FetchLogRow


def load_sources(registry_path: str, max_size: int = REGISTRY_FILE_SIZE_LIMIT) -> List[Source]:
    """Load the source registry (YAML or JSON).

    The file may hold a bare list or a mapping with a `blogs` or `sources` list.
    Invalid and duplicate entries are skipped with a warning.
    """
    data = safe_read_yaml(registry_path, max_size, "sources")
    if data is None:
        return []
    if isinstance(data, dict):
        entries = data.get("blogs", data.get("sources"))
    else:
        entries = data
    if not isinstance(entries, list):
        logger.error(f"Source registry {registry_path} must contain a list of sources")
        return []

    sources: List[Source] = []
    seen = set()
    for index, entry in enumerate(entries):
        try:
            source = Source.from_registry(entry)
        except ValueError as e:
            logger.warning(f"Skipping registry entry #{index}: {e}")
            continue
        if source.id in seen:
            logger.warning(f"Skipping duplicate registry entry for source {source.id}")
            continue
        seen.add(source.id)
        sources.append(source)

    logger.info(f"Loaded {len(sources)} sources from {registry_path}")
    return sources


# ----------------------------------------------------------------------
# Schema
# ----------------------------------------------------------------------
# Columns added after the first schema version: table -> [(column, definition)]
_COLUMN_MIGRATIONS = {
    "sources": [
        ("ignore_link_date_inference", "INTEGER DEFAULT 0"),
        ("allow_link_date_inference", "INTEGER DEFAULT 0"),
        ("max_items", "INTEGER"),
    ],
    "posts": [
        ("excerpt", "TEXT DEFAULT ''"),
    ],
}


def initialize_database(conn, schema_path: str, size_limit_mb: int = 10) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='posts'")
        posts_table_exists = cursor.fetchone() is not None

        if not posts_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
        cursor.executescript(_read_schema_file(schema_path, size_limit_mb))
        conn.commit()
        if posts_table_exists:
            _run_migrations(conn)
        else:
            logger.info("Database schema initialized successfully")
    except (Error, OSError, ValueError) as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Add any columns missing from databases created by older versions."""
    cursor = conn.cursor()
    try:
        for table, columns in _COLUMN_MIGRATIONS.items():
            cursor.execute(f"PRAGMA table_info({table})")
            existing = {row[1] for row in cursor.fetchall()}
            for column, definition in columns:
                if column not in existing:
                    logger.info(f"Adding {column} column to {table} table")
                    cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
                    conn.commit()
                    logger.info(f"Migration completed: added {column} column")
    finally:
        cursor.close()


def _read_schema_file(schema_path: str, size_limit_mb: int) -> str:
    """Read the schema from the SQL file."""
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = size_limit_mb * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------
class DatabaseQueue:
    """A queue for database operations so only one coroutine touches the connection.

    Operations are the public synchronous methods below, invoked by name:

        await db.execute('upsert_posts', posts=[...])
    """

    def __init__(self, db_path: str, schema_path: str, save_batch_size: int = 50,
                 schema_size_limit_mb: int = 10):
        self.db_path = db_path
        self.schema_path = schema_path
        self.save_batch_size = max(1, int(save_batch_size))
        self.schema_size_limit_mb = schema_size_limit_mb
        self.queue: Queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    @classmethod
    def from_config(cls, config) -> "DatabaseQueue":
        return cls(
            config.DATABASE_PATH,
            config.SCHEMA_FILE_PATH,
            save_batch_size=config.SAVE_BATCH_SIZE,
            schema_size_limit_mb=config.SCHEMA_FILE_SIZE_LIMIT_MB,
        )

    async def start(self) -> None:
        """Open the database, apply the schema and start the worker.

        Raises:
            StoreError: when the database cannot be opened or initialized
        """
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            parent = path.dirname(path.abspath(self.db_path))
            if not path.isdir(parent):
                raise OSError(f"Database directory {parent} does not exist")
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn, self.schema_path, self.schema_size_limit_mb)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise StoreError(f"Cannot open store at {self.db_path}: {e}") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any waiters still blocked on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def __aenter__(self) -> "DatabaseQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith("_") or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": f"{operation_name}: {e}"}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation.

        Raises:
            StoreError: when the store is not running or the operation failed
        """
        if not self.running:
            raise StoreError(f"Store is not running (operation {operation_name})")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StoreError(f"Store stopped before {operation_name} completed")
            if "error" in result:
                raise StoreError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    def _write_batched(self, sql: str, rows: Sequence[Dict[str, Any]]) -> int:
        """Run one statement over rows in transactions of save_batch_size rows."""
        written = 0
        for start in range(0, len(rows), self.save_batch_size):
            batch = rows[start:start + self.save_batch_size]
            # commits on success, rolls the whole batch back on error
            with self.conn:
                self.conn.executemany(sql, batch)
            written += len(batch)
        return written

    # Source operations
    def upsert_sources(self, sources: List[Source]) -> int:
        """Insert or refresh registry sources."""
        now = utc_now_iso()
        rows = [{
            "id": s.id,
            "name": s.name,
            "url": s.url,
            "feed_url": s.feed_url,
            "categories_json": json.dumps(list(s.categories)),
            "description": s.description or "",
            "force_proxy": int(s.force_proxy),
            "allow_missing_dates": int(s.allow_missing_dates),
            "ignore_link_date_inference": int(s.ignore_link_date_inference),
            "allow_link_date_inference": int(s.allow_link_date_inference),
            "max_items": s.max_items,
            "updated_at": now,
        } for s in sources]
        return self._write_batched('''
            INSERT INTO sources (
                id, name, url, feed_url, categories_json, description, force_proxy,
                allow_missing_dates, ignore_link_date_inference, allow_link_date_inference,
                max_items, updated_at
            ) VALUES (
                :id, :name, :url, :feed_url, :categories_json, :description, :force_proxy,
                :allow_missing_dates, :ignore_link_date_inference, :allow_link_date_inference,
                :max_items, :updated_at
            )
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                url = excluded.url,
                feed_url = excluded.feed_url,
                categories_json = excluded.categories_json,
                description = excluded.description,
                force_proxy = excluded.force_proxy,
                allow_missing_dates = excluded.allow_missing_dates,
                ignore_link_date_inference = excluded.ignore_link_date_inference,
                allow_link_date_inference = excluded.allow_link_date_inference,
                max_items = excluded.max_items,
                updated_at = excluded.updated_at
        ''', rows)

    def count_sources(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM sources").fetchone()
        return int(row[0]) if row else 0

    # Post operations
    def upsert_posts(self, posts: List[Post], fetched_at: Optional[str] = None) -> int:
        """Insert new posts and update re-observed ones in place (id preserved)."""
        default_fetched_at = fetched_at or utc_now_iso()
        rows = [{
            "id": p.id,
            "source_id": p.source_id,
            "title": p.title,
            "link": p.link,
            "date": p.date,
            "excerpt": p.excerpt or "",
            "fetched_at": p.fetched_at or default_fetched_at,
        } for p in posts]
        return self._write_batched('''
            INSERT INTO posts (id, source_id, title, link, date, excerpt, fetched_at)
            VALUES (:id, :source_id, :title, :link, :date, :excerpt, :fetched_at)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                link = excluded.link,
                date = excluded.date,
                excerpt = excluded.excerpt,
                fetched_at = excluded.fetched_at
        ''', rows)

    def load_posts(self, source_id: Optional[str] = None) -> List[Post]:
        """All stored posts (optionally for one source), newest first."""
        query = "SELECT id, source_id, title, link, date, excerpt, fetched_at FROM posts"
        params: tuple = ()
        if source_id is not None:
            query += " WHERE source_id = ?"
            params = (source_id,)
        query += " ORDER BY date DESC, id ASC"
        return [
            Post(
                id=row["id"],
                source_id=row["source_id"],
                title=row["title"],
                link=row["link"],
                date=row["date"],
                excerpt=row["excerpt"] or "",
                fetched_at=row["fetched_at"],
            )
            for row in self.conn.execute(query, params).fetchall()
        ]

    def count_posts(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM posts").fetchone()
        return int(row[0]) if row else 0

    # Fetch log operations
    def insert_fetch_logs(self, rows: List[FetchLogRow]) -> int:
        """Append fetch log rows (never updated)."""
        payload = [{
            "source_id": r.source_id,
            "status": r.status,
            "post_count": r.post_count or 0,
            "latency_ms": r.latency_ms,
            "error": r.error or None,
            "fetched_at": r.fetched_at or utc_now_iso(),
        } for r in rows]
        return self._write_batched('''
            INSERT INTO fetch_log (source_id, status, post_count, latency_ms, error, fetched_at)
            VALUES (:source_id, :status, :post_count, :latency_ms, :error, :fetched_at)
        ''', payload)

    def has_fetch_logs(self) -> bool:
        return self.conn.execute("SELECT 1 FROM fetch_log LIMIT 1").fetchone() is not None

    def latest_fetch_logs(self) -> List[FetchLogRow]:
        """Most recent fetch log row per source."""
        rows = self.conn.execute('''
            SELECT f.source_id, f.status, f.post_count, f.latency_ms, f.error, f.fetched_at
            FROM fetch_log f
            JOIN (
                SELECT source_id, MAX(id) AS max_id
                FROM fetch_log
                GROUP BY source_id
            ) latest ON latest.max_id = f.id
            ORDER BY f.source_id
        ''').fetchall()
        return [
            FetchLogRow(
                source_id=row["source_id"],
                status=row["status"],
                post_count=row["post_count"] or 0,
                latency_ms=row["latency_ms"],
                error=row["error"],
                fetched_at=row["fetched_at"],
            )
            for row in rows
        ]
