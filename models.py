#!/usr/bin/env python3
"""
Database models and operations for the feed sync engine.

All storage access goes through DatabaseQueue: callers await
``db.execute("operation_name", **params)`` and the queue runs operations one
at a time on a single SQLite connection. Each operation is a short
transaction that commits before the next one starts.
"""

from os import path, access, R_OK
import json
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, Event, create_task, wait_for, TimeoutError, CancelledError
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any, Iterable

from config import config, get_logger
from errors import StorageError, DuplicateItemError
from telemetry import trace_span
from utils import now_ts

# Module-specific logger
logger = get_logger("models")

# Columns added to feeds after the first schema revision
_FEED_COLUMN_MIGRATIONS = {
    'etag': "ALTER TABLE feeds ADD COLUMN etag TEXT",
    'last_modified': "ALTER TABLE feeds ADD COLUMN last_modified TEXT",
    'last_success_at': "ALTER TABLE feeds ADD COLUMN last_success_at INTEGER",
}


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists; checking migrations")
            _run_migrations(conn)
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Bring an existing database up to the current schema."""
    cursor = conn.cursor()
    try:
        cursor.execute("PRAGMA table_info(feeds)")
        columns = {row[1] for row in cursor.fetchall()}
        for column, statement in _FEED_COLUMN_MIGRATIONS.items():
            if column not in columns:
                logger.info(f"Adding {column} column to feeds table")
                cursor.execute(statement)
        conn.commit()

        # Creates any table or index introduced since the database was created
        cursor.executescript(_read_schema_file())
        conn.commit()
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


def _placeholders(values: Iterable[Any]) -> str:
    return ','.join('?' for _ in values)


class DatabaseQueue:
    """A queue for database operations so a single connection is never used concurrently."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue: Queue = Queue()
        self.results: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready: Optional[Event] = None
        self._init_error: Optional[Exception] = None

    async def start(self) -> None:
        """Start the database worker and wait until the schema is ready."""
        if self.running:
            return

        self.running = True
        self._init_error = None
        self._ready = Event()
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self._init_error is not None:
            self.running = False
            raise StorageError("initialize_database", str(self._init_error)) from self._init_error
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

        # Wake any caller still waiting so it can fail instead of hanging
        for event in self.events.values():
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            logger.error(f"Error initializing database {self.db_path}: {e}")
            self._init_error = e
            self._ready.set()
            return
        self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        raise AttributeError(f"Unknown operation: {operation_name}")
                    self.results[operation_id] = {"result": method(**params)}
                except DuplicateItemError as e:
                    self.conn.rollback()
                    logger.debug(f"Duplicate item in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                except Exception as e:
                    self.conn.rollback()
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                raise

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "feed.id": params.get("feed_id"),
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation and return its result.

        Raises:
            StorageError: the operation failed (DuplicateItemError for guid collisions).
        """
        if not self.running:
            raise StorageError(operation_name, "database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError(operation_name, "database worker stopped")
            if "error" in result:
                error = result["error"]
                if isinstance(error, StorageError):
                    raise error
                raise StorageError(operation_name, str(error)) from error
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # ------------------------------------------------------------------
    # Users, settings and feeds
    # ------------------------------------------------------------------
    def create_user(self, name: str) -> int:
        cursor = self.conn.execute(
            "INSERT INTO users (name, created_at) VALUES (?, ?)", (name, now_ts())
        )
        self.conn.commit()
        return cursor.lastrowid

    def list_user_ids(self) -> List[int]:
        rows = self.conn.execute("SELECT id FROM users ORDER BY id").fetchall()
        return [row['id'] for row in rows]

    def get_auto_archive_days(self, user_id: int) -> Optional[int]:
        """Return the user's retention window in days, or None when unset."""
        row = self.conn.execute(
            "SELECT auto_archive_days FROM settings WHERE user_id = ?", (user_id,)
        ).fetchone()
        return row['auto_archive_days'] if row else None

    def set_auto_archive_days(self, user_id: int, days: Optional[int]) -> bool:
        if days is not None and not 1 <= int(days) <= 365:
            raise ValueError(f"auto_archive_days must be between 1 and 365, got {days}")
        self.conn.execute(
            """
            INSERT INTO settings (user_id, auto_archive_days, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET auto_archive_days = excluded.auto_archive_days,
                                               updated_at = excluded.updated_at
            """,
            (user_id, days, now_ts()),
        )
        self.conn.commit()
        return True

    def create_feed(self, user_id: int, feed_url: str, title: str = '', url: Optional[str] = None,
                    description: Optional[str] = None, icon: Optional[str] = None) -> int:
        """Subscribe a user to a feed. New feeds start healthy and never synced."""
        cursor = self.conn.execute(
            """
            INSERT INTO feeds (user_id, feed_url, title, url, description, icon, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, feed_url, title or '', url, description, icon, now_ts()),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_feed(self, feed_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        return dict(row) if row else None

    def select_stale_feeds(self, outdated_before: int, limit: int) -> List[Dict[str, Any]]:
        """Feeds due for a sync: not broken and never synced or last synced before the cutoff.

        Longest-neglected feeds come first; never-synced feeds follow the synced ones.
        """
        rows = self.conn.execute(
            """
            SELECT id, user_id, title, feed_url, last_sync_at
            FROM feeds
            WHERE sync_status != 'broken'
              AND (last_sync_at IS NULL OR last_sync_at < ?)
            ORDER BY last_sync_at IS NULL, last_sync_at ASC, id ASC
            LIMIT ?
            """,
            (outdated_before, limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def update_feed_headers(self, feed_id: int, etag: Optional[str] = None,
                            last_modified: Optional[str] = None) -> bool:
        """Store HTTP validators for the next conditional request."""
        cursor = self.conn.execute(
            "UPDATE feeds SET etag = ?, last_modified = ? WHERE id = ?",
            (etag, last_modified, feed_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def update_feed_metadata(self, feed_id: int, title: Optional[str] = None,
                             description: Optional[str] = None, url: Optional[str] = None) -> bool:
        """Fill display fields that are still empty from the feed document."""
        cursor = self.conn.execute(
            """
            UPDATE feeds
            SET title = CASE WHEN title = '' AND ? IS NOT NULL THEN ? ELSE title END,
                description = COALESCE(NULLIF(description, ''), ?),
                url = COALESCE(NULLIF(url, ''), ?)
            WHERE id = ?
            """,
            (title, title, description, url, feed_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def get_feed_health(self, feed_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            """
            SELECT id, sync_status, sync_fail_count, sync_error, last_sync_at, last_success_at
            FROM feeds WHERE id = ?
            """,
            (feed_id,),
        ).fetchone()
        return dict(row) if row else None

    def update_feed_health(self, feed_id: int, sync_status: str, sync_fail_count: int,
                           sync_error: Optional[str], last_sync_at: int, succeeded: bool) -> bool:
        cursor = self.conn.execute(
            """
            UPDATE feeds
            SET sync_status = ?, sync_fail_count = ?, sync_error = ?, last_sync_at = ?,
                last_success_at = CASE WHEN ? THEN ? ELSE last_success_at END
            WHERE id = ?
            """,
            (sync_status, sync_fail_count, sync_error, last_sync_at,
             1 if succeeded else 0, last_sync_at, feed_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def reset_feed_health(self, feed_id: int) -> bool:
        """Re-admit a feed to scheduling after a user-triggered retry."""
        cursor = self.conn.execute(
            "UPDATE feeds SET sync_status = 'ok', sync_fail_count = 0, sync_error = NULL WHERE id = ?",
            (feed_id,),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def count_feeds_by_status(self) -> Dict[str, int]:
        rows = self.conn.execute(
            "SELECT sync_status, COUNT(*) AS n FROM feeds GROUP BY sync_status"
        ).fetchall()
        counts = {'ok': 0, 'failing': 0, 'broken': 0}
        counts.update({row['sync_status']: row['n'] for row in rows})
        return counts

    # ------------------------------------------------------------------
    # Rules and tags
    # ------------------------------------------------------------------
    def create_filter_rule(self, feed_id: int, pattern: str, operator: str, is_active: bool = True) -> int:
        now = now_ts()
        cursor = self.conn.execute(
            """
            INSERT INTO filter_rules (feed_id, pattern, operator, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (feed_id, pattern, operator, 1 if is_active else 0, now, now),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_active_filter_rules(self, feed_id: int) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT id, feed_id, pattern, operator, is_active
            FROM filter_rules WHERE feed_id = ? AND is_active = 1 ORDER BY id
            """,
            (feed_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    def create_tag(self, user_id: int, name: str) -> int:
        cursor = self.conn.execute(
            "INSERT INTO tags (user_id, name, created_at) VALUES (?, ?, ?)", (user_id, name, now_ts())
        )
        self.conn.commit()
        return cursor.lastrowid

    def add_feed_tag(self, feed_id: int, tag_id: int) -> bool:
        cursor = self.conn.execute(
            "INSERT OR IGNORE INTO feed_tags (feed_id, tag_id) VALUES (?, ?)", (feed_id, tag_id)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def get_feed_tag_ids(self, feed_id: int) -> List[int]:
        rows = self.conn.execute(
            "SELECT tag_id FROM feed_tags WHERE feed_id = ? ORDER BY tag_id", (feed_id,)
        ).fetchall()
        return [row['tag_id'] for row in rows]

    def get_article_tag_ids(self, article_id: int) -> List[int]:
        rows = self.conn.execute(
            "SELECT tag_id FROM article_tags WHERE article_id = ? ORDER BY tag_id", (article_id,)
        ).fetchall()
        return [row['tag_id'] for row in rows]

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------
    def check_existing_guids(self, feed_id: int, guids: List[str]) -> Set[str]:
        """Check which GUIDs already exist in the database for this feed."""
        if not guids:
            return set()
        unique = list(dict.fromkeys(guids))
        rows = self.conn.execute(
            f"SELECT guid FROM articles WHERE feed_id = ? AND guid IN ({_placeholders(unique)})",
            [feed_id] + unique,
        ).fetchall()
        return {row['guid'] for row in rows}

    def insert_article(self, user_id: int, feed_id: int, item: Dict[str, Any],
                       is_read: bool, is_archived: bool, tag_ids: List[int]) -> int:
        """Insert one article and its tag links in a single transaction.

        Raises:
            DuplicateItemError: the feed already holds an item with this guid.
        """
        try:
            cursor = self.conn.execute(
                """
                INSERT INTO articles (user_id, feed_id, guid, title, url, description, content,
                                      author, pub_date, is_read, is_archived, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    feed_id,
                    item.get('guid'),
                    item.get('title') or '',
                    item.get('url'),
                    item.get('description'),
                    item.get('content'),
                    item.get('author'),
                    item['pub_date'],
                    1 if is_read else 0,
                    1 if is_archived else 0,
                    now_ts(),
                ),
            )
        except IntegrityError as e:
            if 'UNIQUE' in str(e):
                raise DuplicateItemError('insert_article', f"guid {item.get('guid')!r} already stored for feed {feed_id}") from e
            raise
        article_id = cursor.lastrowid
        if tag_ids:
            self.conn.executemany(
                "INSERT OR IGNORE INTO article_tags (article_id, tag_id) VALUES (?, ?)",
                [(article_id, tag_id) for tag_id in tag_ids],
            )
        self.conn.commit()
        return article_id

    def get_article(self, article_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM articles WHERE id = ?", (article_id,)).fetchone()
        return dict(row) if row else None

    def list_articles(self, feed_id: int) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM articles WHERE feed_id = ? ORDER BY pub_date DESC, id DESC", (feed_id,)
        ).fetchall()
        return [dict(row) for row in rows]

    def list_unread_articles(self, feed_id: int) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT id, title FROM articles WHERE feed_id = ? AND is_read = 0 ORDER BY id", (feed_id,)
        ).fetchall()
        return [dict(row) for row in rows]

    def mark_articles_read(self, article_ids: List[int]) -> int:
        if not article_ids:
            return 0
        cursor = self.conn.execute(
            f"UPDATE articles SET is_read = 1 WHERE is_read = 0 AND id IN ({_placeholders(article_ids)})",
            list(article_ids),
        )
        self.conn.commit()
        return cursor.rowcount

    def archive_articles_before(self, user_id: int, cutoff: int) -> int:
        """Archive unread, unarchived articles published before the cutoff."""
        cursor = self.conn.execute(
            """
            UPDATE articles SET is_archived = 1
            WHERE user_id = ? AND is_read = 0 AND is_archived = 0 AND pub_date < ?
            """,
            (user_id, cutoff),
        )
        self.conn.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Sync logs
    # ------------------------------------------------------------------
    def add_sync_log(self, feed_id: int, user_id: int, status: str, duration_ms: Optional[int] = None,
                     http_status: Optional[int] = None, error: Optional[str] = None,
                     articles_added: int = 0) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO feed_sync_logs (feed_id, user_id, status, duration_ms, http_status, error,
                                        articles_added, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (feed_id, user_id, status, duration_ms, http_status, error, articles_added, now_ts()),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_feed_sync_logs(self, feed_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM feed_sync_logs WHERE feed_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (feed_id, limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def prune_sync_logs(self, older_than: int) -> int:
        cursor = self.conn.execute("DELETE FROM feed_sync_logs WHERE created_at < ?", (older_than,))
        self.conn.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Job queue
    # ------------------------------------------------------------------
    def enqueue_job(self, job_key: str, payload: Dict[str, Any], max_attempts: int,
                    available_at: Optional[int] = None) -> bool:
        """Insert a queued job unless one is already queued or running for the key."""
        now = now_ts()
        cursor = self.conn.execute(
            """
            INSERT OR IGNORE INTO jobs (job_key, payload_json, status, max_attempts, available_at, created_at)
            VALUES (?, ?, 'queued', ?, ?, ?)
            """,
            (job_key, json.dumps(payload), max_attempts, available_at if available_at is not None else now, now),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def force_enqueue_job(self, job_key: str, payload: Dict[str, Any], max_attempts: int) -> bool:
        """Replace a queued job for the key with a fresh one available now."""
        self.conn.execute("DELETE FROM jobs WHERE job_key = ? AND status = 'queued'", (job_key,))
        return self.enqueue_job(job_key, payload, max_attempts)

    def claim_next_job(self, worker_id: str, now: int, lock_timeout: int) -> Optional[Dict[str, Any]]:
        """Claim the oldest available job, first requeueing jobs with stale locks.

        A stale job that has used up its attempts is failed instead.
        """
        stale_before = now - lock_timeout
        self.conn.execute(
            """
            UPDATE jobs
            SET status = 'failed', locked_by = NULL, locked_at = NULL, finished_at = ?,
                error = 'stale_lock_attempts_exhausted'
            WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
              AND attempts >= max_attempts
            """,
            (now, stale_before),
        )
        self.conn.execute(
            """
            UPDATE jobs
            SET status = 'queued', locked_by = NULL, locked_at = NULL, error = 'stale_lock_requeued'
            WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
            """,
            (stale_before,),
        )
        row = self.conn.execute(
            """
            SELECT id FROM jobs
            WHERE status = 'queued' AND available_at <= ?
            ORDER BY available_at ASC, id ASC
            LIMIT 1
            """,
            (now,),
        ).fetchone()
        if not row:
            self.conn.commit()
            return None
        self.conn.execute(
            """
            UPDATE jobs SET status = 'running', attempts = attempts + 1, locked_by = ?, locked_at = ?
            WHERE id = ?
            """,
            (worker_id, now, row['id']),
        )
        self.conn.commit()
        job = dict(self.conn.execute("SELECT * FROM jobs WHERE id = ?", (row['id'],)).fetchone())
        job['payload'] = json.loads(job.pop('payload_json') or '{}')
        return job

    def complete_job(self, job_id: int) -> bool:
        cursor = self.conn.execute(
            """
            UPDATE jobs SET status = 'succeeded', finished_at = ?, error = NULL,
                            locked_by = NULL, locked_at = NULL
            WHERE id = ? AND status = 'running'
            """,
            (now_ts(), job_id),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def fail_job(self, job_id: int, error: str, retry_at: Optional[int] = None) -> Optional[str]:
        """Record a failed attempt; requeue at ``retry_at`` while attempts remain.

        Returns the job's new status, or None when the job was not running.
        """
        row = self.conn.execute(
            "SELECT attempts, max_attempts FROM jobs WHERE id = ? AND status = 'running'", (job_id,)
        ).fetchone()
        if not row:
            return None
        if retry_at is not None and row['attempts'] < row['max_attempts']:
            self.conn.execute(
                """
                UPDATE jobs SET status = 'queued', available_at = ?, error = ?,
                                locked_by = NULL, locked_at = NULL
                WHERE id = ?
                """,
                (retry_at, error, job_id),
            )
            status = 'queued'
        else:
            self.conn.execute(
                """
                UPDATE jobs SET status = 'failed', finished_at = ?, error = ?,
                                locked_by = NULL, locked_at = NULL
                WHERE id = ?
                """,
                (now_ts(), error, job_id),
            )
            status = 'failed'
        self.conn.commit()
        return status

    def get_job(self, job_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            return None
        job = dict(row)
        job['payload'] = json.loads(job.pop('payload_json') or '{}')
        return job

    def list_jobs(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        if status:
            rows = self.conn.execute(
                "SELECT * FROM jobs WHERE status = ? ORDER BY id LIMIT ?", (status, limit)
            ).fetchall()
        else:
            rows = self.conn.execute("SELECT * FROM jobs ORDER BY id LIMIT ?", (limit,)).fetchall()
        jobs = []
        for row in rows:
            job = dict(row)
            job['payload'] = json.loads(job.pop('payload_json') or '{}')
            jobs.append(job)
        return jobs

    def count_jobs_by_status(self) -> Dict[str, int]:
        rows = self.conn.execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status").fetchall()
        counts = {'queued': 0, 'running': 0, 'succeeded': 0, 'failed': 0}
        counts.update({row['status']: row['n'] for row in rows})
        return counts

    def prune_jobs(self, keep_completed: int, keep_failed: int) -> int:
        """Delete finished job records beyond the newest ``keep_*`` of each kind."""
        removed = 0
        for status, keep in (('succeeded', keep_completed), ('failed', keep_failed)):
            cursor = self.conn.execute(
                """
                DELETE FROM jobs WHERE status = ? AND id NOT IN (
                    SELECT id FROM jobs WHERE status = ? ORDER BY finished_at DESC, id DESC LIMIT ?
                )
                """,
                (status, status, keep),
            )
            removed += cursor.rowcount
        self.conn.commit()
        return removed
