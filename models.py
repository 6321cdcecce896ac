#!/usr/bin/env python3
"""
Database models and operations for the feed ingestor.

This module contains the row types (subscriptions, their fetch configs and
ingested posts) and the SQLite-backed storage used by the scheduler and the
fetch pipeline, providing a clean separation between data access and business
logic.
"""

from dataclasses import dataclass, field, asdict
from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Tuple

from config import config, get_logger, FetchConfig, apply_overrides
from errors import FeedIngestError, PersistenceError
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")

SUBSCRIPTION_STATUSES = ("active", "paused", "error", "disabled")
# Statuses that still get fetched; "error" recovers on the next successful fetch
FETCHABLE_STATUSES = ("active", "error")
SUBSCRIPTION_TYPES = (
    "nitter_rss",
    "twitter_rss",
    "youtube_rss",
    "reddit_rss",
    "generic_rss",
    "webhook",
    "api",
)

# Feed dialect -> post source classification
SOURCE_TYPE_BY_SUBSCRIPTION_TYPE = {
    "nitter_rss": "twitter",
    "twitter_rss": "twitter",
    "youtube_rss": "youtube",
    "reddit_rss": "reddit",
    "generic_rss": "rss",
}


def source_type_for(subscription_type: Optional[str]) -> str:
    """Map a subscription's feed dialect to the source type stamped on its posts."""
    return SOURCE_TYPE_BY_SUBSCRIPTION_TYPE.get((subscription_type or "").lower(), "other")


def _loads(value: Optional[str], default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


@dataclass
class Subscription:
    id: int
    name: str
    url: str
    type: str = "nitter_rss"
    description: Optional[str] = None
    status: str = "active"
    is_enabled: bool = True
    last_fetch_at: Optional[int] = None
    last_fetch_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[int] = None
    total_fetches: int = 0
    total_items: int = 0
    error_count: int = 0
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def is_fetchable(self) -> bool:
        return bool(self.is_enabled) and self.status in FETCHABLE_STATUSES

    @classmethod
    def from_row(cls, row: Row) -> "Subscription":
        return cls(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            type=row["type"],
            description=row["description"],
            status=row["status"],
            is_enabled=bool(row["is_enabled"]),
            last_fetch_at=row["last_fetch_at"],
            last_fetch_count=row["last_fetch_count"] or 0,
            last_error=row["last_error"],
            last_error_at=row["last_error_at"],
            total_fetches=row["total_fetches"] or 0,
            total_items=row["total_items"] or 0,
            error_count=row["error_count"] or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class SubscriptionConfig:
    """Stored fetch policy row; unset columns fall back to the process defaults."""

    subscription_id: int
    cron_schedule: Optional[str] = None
    auto_fetch: bool = True
    max_items: Optional[int] = None
    retry_count: Optional[int] = None
    timeout: Optional[int] = None
    user_agent: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    deduplication: Optional[Dict[str, Any]] = None

    @property
    def wants_schedule(self) -> bool:
        return bool(self.auto_fetch and self.cron_schedule and self.cron_schedule.strip())

    def to_fetch_config(self, base: Optional[FetchConfig] = None) -> FetchConfig:
        """Layer this row over ``base`` (process defaults when omitted)."""
        return apply_overrides(base or config.default_fetch_config(), {
            "cron_schedule": self.cron_schedule,
            "auto_fetch": self.auto_fetch,
            "max_items": self.max_items,
            "retry_count": self.retry_count,
            "timeout": self.timeout,
            "user_agent": self.user_agent,
            "headers": self.headers or None,
            "deduplication": self.deduplication,
        })

    @classmethod
    def from_row(cls, row: Row) -> "SubscriptionConfig":
        auto_fetch = row["auto_fetch"]
        return cls(
            subscription_id=row["subscription_id"],
            cron_schedule=row["cron_schedule"],
            auto_fetch=True if auto_fetch is None else bool(auto_fetch),
            max_items=row["max_items"],
            retry_count=row["retry_count"],
            timeout=row["timeout"],
            user_agent=row["user_agent"],
            headers=_loads(row["headers"], {}) or {},
            deduplication=_loads(row["deduplication"]),
        )


@dataclass
class Post:
    subscription_id: int
    external_id: str
    source_type: str
    published_at: int
    title: str = ""
    content: str = ""
    content_type: str = "text"
    rss_source: Optional[str] = None
    link_url: Optional[str] = None
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    author_username: Optional[str] = None
    author_avatar: Optional[str] = None
    author_verified: bool = False
    media_urls: List[str] = field(default_factory=list)
    hashtags: List[str] = field(default_factory=list)
    mentions: List[str] = field(default_factory=list)
    raw_data: Any = None
    created_at: Optional[int] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Row) -> "Post":
        return cls(
            id=row["id"],
            subscription_id=row["subscription_id"],
            external_id=row["external_id"],
            source_type=row["source_type"],
            published_at=row["published_at"],
            title=row["title"] or "",
            content=row["content"] or "",
            content_type=row["content_type"],
            rss_source=row["rss_source"],
            link_url=row["link_url"],
            author_id=row["author_id"],
            author_name=row["author_name"],
            author_username=row["author_username"],
            author_avatar=row["author_avatar"],
            author_verified=bool(row["author_verified"]),
            media_urls=_loads(row["media_urls"], []),
            hashtags=_loads(row["hashtags"], []),
            mentions=_loads(row["mentions"], []),
            raw_data=_loads(row["raw_data"]),
            created_at=row["created_at"],
        )


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='subscriptions'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations to ensure thread safety.

    All operations run one at a time on a single sqlite3 connection owned by
    the worker task; callers use ``await db.execute("<operation>", **params)``.
    Failures surface to the caller as ``PersistenceError``.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DATABASE_PATH
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database (creating the schema if needed) and start the worker.

        Raises:
            PersistenceError: If the database cannot be opened or initialized.
        """
        if self.running:
            return

        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e

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

        # Release any callers still waiting on an operation
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": PersistenceError("Database worker stopped")})
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

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
                    if operation_name.startswith("_") or operation_name in ("start", "stop", "execute") or not callable(method):
                        self.results[operation_id] = {"error": PersistenceError(f"Unknown operation: {operation_name}")}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.conn.rollback()
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
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
            PersistenceError: If the operation is unknown or fails.
        """
        if not self.running:
            raise PersistenceError(f"Database worker is not running (operation: {operation_name})")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id)

            if "error" in result:
                error = result["error"]
                if isinstance(error, FeedIngestError):
                    raise error
                raise PersistenceError(f"{operation_name} failed: {error}") from error

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Subscription Operations
    def create_subscription(self, name: str, url: str, type: str = "nitter_rss",
                            description: Optional[str] = None, status: str = "active",
                            is_enabled: bool = True) -> int:
        """Insert a subscription and return its id."""
        if status not in SUBSCRIPTION_STATUSES:
            raise ValueError(f"Invalid subscription status '{status}'")
        now = int(time())
        cursor = self.conn.cursor()
        cursor.execute(
            """INSERT INTO subscriptions (name, description, type, url, status, is_enabled, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (name, description, type, url, status, int(bool(is_enabled)), now, now),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
        row = cursor.fetchone()
        return Subscription.from_row(row) if row else None

    def get_subscription_by_url(self, url: str) -> Optional[Subscription]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM subscriptions WHERE url = ? ORDER BY id LIMIT 1", (url,))
        row = cursor.fetchone()
        return Subscription.from_row(row) if row else None

    def list_subscriptions(self) -> List[Subscription]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM subscriptions ORDER BY id")
        return [Subscription.from_row(row) for row in cursor.fetchall()]

    def set_subscription_enabled(self, subscription_id: int, is_enabled: bool,
                                 status: Optional[str] = None) -> bool:
        """Toggle the enabled flag (and optionally status) of a subscription."""
        if status is not None and status not in SUBSCRIPTION_STATUSES:
            raise ValueError(f"Invalid subscription status '{status}'")
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE subscriptions SET is_enabled = ?, status = COALESCE(?, status), updated_at = ? WHERE id = ?",
            (int(bool(is_enabled)), status, int(time()), subscription_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def delete_subscription(self, subscription_id: int) -> bool:
        """Delete a subscription; its config and posts cascade."""
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM subscriptions WHERE id = ?", (subscription_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    # Subscription Config Operations
    def get_subscription_config(self, subscription_id: int) -> Optional[SubscriptionConfig]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM subscription_configs WHERE subscription_id = ?", (subscription_id,))
        row = cursor.fetchone()
        return SubscriptionConfig.from_row(row) if row else None

    def upsert_subscription_config(self, subscription_id: int, **values) -> bool:
        """Create or update the config row of a subscription.

        Accepts the columns of ``subscription_configs`` as keyword arguments;
        ``headers`` and ``deduplication`` may be passed as dicts.
        """
        allowed = {"cron_schedule", "auto_fetch", "max_items", "retry_count", "timeout",
                   "user_agent", "headers", "deduplication"}
        unknown = set(values) - allowed
        if unknown:
            raise ValueError(f"Unknown config column(s): {', '.join(sorted(unknown))}")
        for key in ("headers", "deduplication"):
            if key in values and not isinstance(values[key], (str, type(None))):
                values[key] = _dumps(values[key])
        if "auto_fetch" in values and values["auto_fetch"] is not None:
            values["auto_fetch"] = int(bool(values["auto_fetch"]))

        now = int(time())
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT OR IGNORE INTO subscription_configs (subscription_id, created_at, updated_at) VALUES (?, ?, ?)",
            (subscription_id, now, now),
        )
        if values:
            columns = sorted(values)
            assignments = ", ".join(f"{col} = ?" for col in columns)
            cursor.execute(
                f"UPDATE subscription_configs SET {assignments}, updated_at = ? WHERE subscription_id = ?",
                [values[col] for col in columns] + [now, subscription_id],
            )
        self.conn.commit()
        return True

    def list_active_enabled_subscriptions_with_config(self) -> List[Tuple[Subscription, Optional[SubscriptionConfig]]]:
        """All enabled subscriptions in a fetchable status (active or error), joined with their (possibly absent) config."""
        placeholders = ", ".join("?" for _ in FETCHABLE_STATUSES)
        cursor = self.conn.cursor()
        cursor.execute(
            f"""SELECT s.*, c.subscription_id AS cfg_subscription_id
               FROM subscriptions s
               LEFT JOIN subscription_configs c ON c.subscription_id = s.id
               WHERE s.is_enabled = 1 AND s.status IN ({placeholders})
               ORDER BY s.id""",
            FETCHABLE_STATUSES,
        )
        rows = cursor.fetchall()
        pairs = []
        for row in rows:
            subscription = Subscription.from_row(row)
            sub_config = None
            if row["cfg_subscription_id"] is not None:
                sub_config = self.get_subscription_config(subscription.id)
            pairs.append((subscription, sub_config))
        return pairs

    # Health Operations
    def update_subscription_health(self, subscription_id: int, success: bool,
                                   items_count: int = 0, error: Optional[str] = None) -> bool:
        """Record the outcome of one fetch attempt in a single UPDATE."""
        now = int(time())
        cursor = self.conn.cursor()
        if success:
            cursor.execute(
                """UPDATE subscriptions SET
                       total_fetches = total_fetches + 1,
                       updated_at = ?,
                       last_fetch_at = ?,
                       last_fetch_count = ?,
                       total_items = total_items + ?,
                       status = 'active'
                   WHERE id = ?""",
                (now, now, items_count, items_count, subscription_id),
            )
        else:
            cursor.execute(
                """UPDATE subscriptions SET
                       total_fetches = total_fetches + 1,
                       updated_at = ?,
                       last_error = ?,
                       last_error_at = ?,
                       error_count = error_count + 1,
                       status = 'error'
                   WHERE id = ?""",
                (now, error, now, subscription_id),
            )
        self.conn.commit()
        return cursor.rowcount > 0

    # Post Operations
    def find_post_by_external_id(self, subscription_id: int, external_id: str) -> Optional[Post]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM posts WHERE subscription_id = ? AND external_id = ? LIMIT 1",
            (subscription_id, external_id),
        )
        row = cursor.fetchone()
        return Post.from_row(row) if row else None

    def insert_post(self, post: Post) -> bool:
        """Insert a post; returns False when (subscription_id, external_id) already exists."""
        now = int(time())
        data = asdict(post)
        cursor = self.conn.cursor()
        cursor.execute(
            """INSERT OR IGNORE INTO posts (
                   subscription_id, external_id, title, content, content_type, source_type,
                   rss_source, raw_data, author_id, author_name, author_username, author_avatar,
                   author_verified, media_urls, link_url, hashtags, mentions,
                   published_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                data["subscription_id"],
                data["external_id"],
                data["title"],
                data["content"],
                data["content_type"],
                data["source_type"],
                data["rss_source"],
                _dumps(data["raw_data"]),
                data["author_id"],
                data["author_name"],
                data["author_username"],
                data["author_avatar"],
                int(bool(data["author_verified"])),
                _dumps(data["media_urls"]) if data["media_urls"] else None,
                data["link_url"],
                _dumps(data["hashtags"]) if data["hashtags"] else None,
                _dumps(data["mentions"]) if data["mentions"] else None,
                data["published_at"],
                data["created_at"] or now,
                now,
            ),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def list_posts(self, subscription_id: int, limit: int = 50) -> List[Post]:
        """Newest posts of a subscription, by publish time."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM posts WHERE subscription_id = ? AND is_deleted = 0 "
            "ORDER BY published_at DESC, id DESC LIMIT ?",
            (subscription_id, limit),
        )
        return [Post.from_row(row) for row in cursor.fetchall()]

    def count_posts(self, subscription_id: Optional[int] = None) -> int:
        """Return the number of stored posts, optionally for one subscription."""
        cursor = self.conn.cursor()
        if subscription_id is None:
            cursor.execute("SELECT COUNT(*) FROM posts")
        else:
            cursor.execute("SELECT COUNT(*) FROM posts WHERE subscription_id = ?", (subscription_id,))
        result = cursor.fetchone()
        return int(result[0]) if result else 0

    def get_stats(self) -> Dict[str, Any]:
        """Aggregate counts for the status report."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """SELECT COUNT(*) AS total,
                          COALESCE(SUM(CASE WHEN is_enabled = 1 AND status = 'active' THEN 1 ELSE 0 END), 0) AS active,
                          COALESCE(SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END), 0) AS errored,
                          COALESCE(SUM(total_fetches), 0) AS fetches,
                          COALESCE(SUM(error_count), 0) AS errors
                   FROM subscriptions"""
            )
            row = cursor.fetchone()
            return {
                "subscriptions": row["total"],
                "active_subscriptions": row["active"],
                "errored_subscriptions": row["errored"],
                "total_fetches": row["fetches"],
                "total_errors": row["errors"],
                "posts": self.count_posts(),
            }
        except Error as e:
            logger.error(f"Error computing stats: {e}")
            return {}
