#!/usr/bin/env python3
"""
Database models and operations for the gator aggregator.

This module contains all database-related classes and functions,
providing a clean separation between data access and business logic.
Rows are handed back to callers as plain dicts.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait, wait_for, FIRST_COMPLETED, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import DuplicateKeyError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

# Columns returned for feed rows
FEED_COLUMNS = "id, name, url, user_id, last_fetched_at, created_at, updated_at"
POST_COLUMNS = "id, title, url, description, published_at, feed_id, created_at, updated_at"


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            schema_sql = _read_schema_file()
            cursor.executescript(schema_sql)
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

    try:
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
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


def _duplicate_from_integrity_error(error: IntegrityError, table: str, column: str, value: Any) -> Optional[DuplicateKeyError]:
    """Map SQLite's "UNIQUE constraint failed: table.column" onto DuplicateKeyError."""
    message = str(error)
    if "UNIQUE constraint failed" in message and f"{table}.{column}" in message:
        return DuplicateKeyError(table, column, value)
    return None


def _row_to_dict(row) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


class DatabaseQueue:
    """A queue for database operations so a single connection serves every caller.

    Operations are methods on this class, invoked by name through execute().
    Exceptions raised by an operation are re-raised to the awaiting caller with
    their original type.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()

    async def start(self) -> None:
        """Start the database worker and wait until the schema is in place."""
        if self.running:
            return

        self.running = True
        self._ready.clear()
        self.worker_task = create_task(self._worker())
        ready_wait = create_task(self._ready.wait())
        done, _ = await wait({ready_wait, self.worker_task}, return_when=FIRST_COMPLETED)
        if not ready_wait.done():
            ready_wait.cancel()
        if self.worker_task in done:
            # Worker died during connect/initialization; surface the error
            self.running = False
            self.worker_task.result()
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

        # Wake any callers still waiting so they do not hang
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.debug(f"Using existing database at {self.db_path}")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")

        initialize_database(self.conn)
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
                except DuplicateKeyError as e:
                    logger.debug(f"Database operation {operation_name}: {e}")
                    self.results[operation_id] = {"exception": e}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"exception": e}
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
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation."""
        if not self.running:
            raise RuntimeError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise RuntimeError(f"Database worker stopped before completing {operation_name}")
            if "exception" in result:
                raise result["exception"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # User Operations
    def create_user(self, name: str) -> Dict[str, Any]:
        """Create a user; raises DuplicateKeyError when the name is taken."""
        now = time()
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO users (name, created_at, updated_at) VALUES (?, ?, ?)",
                (name, now, now)
            )
            self.conn.commit()
            cursor.execute("SELECT id, name, created_at, updated_at FROM users WHERE id = ?", (cursor.lastrowid,))
            return _row_to_dict(cursor.fetchone())
        except IntegrityError as e:
            self.conn.rollback()
            raise _duplicate_from_integrity_error(e, "users", "name", name) or e
        finally:
            cursor.close()

    def get_user_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        """Get a user by name."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT id, name, created_at, updated_at FROM users WHERE name = ?", (name,))
            return _row_to_dict(cursor.fetchone())
        finally:
            cursor.close()

    def list_users(self) -> List[Dict[str, Any]]:
        """List all users in creation order."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT id, name, created_at, updated_at FROM users ORDER BY id")
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def delete_all_users(self) -> int:
        """Delete every user; feeds, follows and posts go with them."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM users")
            self.conn.commit()
            return cursor.rowcount
        finally:
            cursor.close()

    # Feed Management Operations
    def create_feed(self, name: str, url: str, user_id: int) -> Dict[str, Any]:
        """Create a feed owned by user_id; raises DuplicateKeyError when the URL exists."""
        now = time()
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO feeds (name, url, user_id, last_fetched_at, created_at, updated_at) "
                "VALUES (?, ?, ?, NULL, ?, ?)",
                (name, url, user_id, now, now)
            )
            self.conn.commit()
            cursor.execute(f"SELECT {FEED_COLUMNS} FROM feeds WHERE id = ?", (cursor.lastrowid,))
            return _row_to_dict(cursor.fetchone())
        except IntegrityError as e:
            self.conn.rollback()
            raise _duplicate_from_integrity_error(e, "feeds", "url", url) or e
        finally:
            cursor.close()

    def get_feed_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        """Get a feed by its URL."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {FEED_COLUMNS} FROM feeds WHERE url = ?", (url,))
            return _row_to_dict(cursor.fetchone())
        finally:
            cursor.close()

    def get_feed(self, feed_id: int) -> Optional[Dict[str, Any]]:
        """Get a feed by its ID."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {FEED_COLUMNS} FROM feeds WHERE id = ?", (feed_id,))
            return _row_to_dict(cursor.fetchone())
        finally:
            cursor.close()

    def list_feeds(self) -> List[Dict[str, Any]]:
        """List all feeds together with the owning user's name."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT f.id, f.name, f.url, f.user_id, f.last_fetched_at, f.created_at, f.updated_at, "
                "u.name AS user_name "
                "FROM feeds f JOIN users u ON u.id = f.user_id ORDER BY f.id"
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def select_next_feed(self) -> Optional[Dict[str, Any]]:
        """Return the feed fetched longest ago; never-fetched feeds come first."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"SELECT {FEED_COLUMNS} FROM feeds "
                "ORDER BY last_fetched_at IS NOT NULL, last_fetched_at ASC, id ASC LIMIT 1"
            )
            return _row_to_dict(cursor.fetchone())
        finally:
            cursor.close()

    def mark_feed_fetched(self, feed_id: int, now: Optional[float] = None) -> bool:
        """Stamp last_fetched_at (and updated_at) for a feed."""
        current_time = time() if now is None else now
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET last_fetched_at = ?, updated_at = ? WHERE id = ?",
                (current_time, current_time, feed_id)
            )
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    # Follow Operations
    def create_feed_follow(self, user_id: int, feed_id: int) -> Dict[str, Any]:
        """Follow a feed; returns the follow row with feed and user names."""
        now = time()
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO feed_follows (user_id, feed_id, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (user_id, feed_id, now, now)
            )
            self.conn.commit()
            cursor.execute(
                "SELECT ff.id, ff.user_id, ff.feed_id, ff.created_at, ff.updated_at, "
                "f.name AS feed_name, u.name AS user_name "
                "FROM feed_follows ff "
                "JOIN feeds f ON f.id = ff.feed_id "
                "JOIN users u ON u.id = ff.user_id "
                "WHERE ff.id = ?",
                (cursor.lastrowid,)
            )
            return _row_to_dict(cursor.fetchone())
        except IntegrityError as e:
            self.conn.rollback()
            raise _duplicate_from_integrity_error(e, "feed_follows", "feed_id", feed_id) or e
        finally:
            cursor.close()

    def get_feed_follows_for_user(self, user_id: int) -> List[Dict[str, Any]]:
        """List the feeds a user follows."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT ff.id, ff.user_id, ff.feed_id, ff.created_at, ff.updated_at, "
                "f.name AS feed_name, f.url AS feed_url, u.name AS user_name "
                "FROM feed_follows ff "
                "JOIN feeds f ON f.id = ff.feed_id "
                "JOIN users u ON u.id = ff.user_id "
                "WHERE ff.user_id = ? ORDER BY ff.id",
                (user_id,)
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def delete_feed_follow(self, user_id: int, url: str) -> int:
        """Unfollow the feed at url for user_id; returns the number of rows removed."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "DELETE FROM feed_follows WHERE user_id = ? AND feed_id IN (SELECT id FROM feeds WHERE url = ?)",
                (user_id, url)
            )
            self.conn.commit()
            return cursor.rowcount
        finally:
            cursor.close()

    # Post Operations
    def insert_post(
        self,
        title: str,
        url: str,
        feed_id: int,
        description: Optional[str] = None,
        published_at: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Insert a post; raises DuplicateKeyError when the URL is already stored for any feed."""
        now = time()
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO posts (title, url, description, published_at, feed_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (title, url, description, published_at, feed_id, now, now)
            )
            self.conn.commit()
            cursor.execute(f"SELECT {POST_COLUMNS} FROM posts WHERE id = ?", (cursor.lastrowid,))
            return _row_to_dict(cursor.fetchone())
        except IntegrityError as e:
            self.conn.rollback()
            raise _duplicate_from_integrity_error(e, "posts", "url", url) or e
        finally:
            cursor.close()

    def get_posts_for_user(self, user_id: int, limit: int) -> List[Dict[str, Any]]:
        """Newest posts from the feeds a user follows; undated posts sort last."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT p.id, p.title, p.url, p.description, p.published_at, p.feed_id, "
                "p.created_at, p.updated_at, f.name AS feed_name "
                "FROM posts p "
                "JOIN feeds f ON f.id = p.feed_id "
                "JOIN feed_follows ff ON ff.feed_id = f.id "
                "WHERE ff.user_id = ? "
                "ORDER BY p.published_at IS NULL, p.published_at DESC, p.id DESC "
                "LIMIT ?",
                (user_id, limit)
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def count_posts(self, feed_id: Optional[int] = None) -> int:
        """Return number of stored posts, optionally for a single feed."""
        cursor = self.conn.cursor()
        try:
            if feed_id is None:
                cursor.execute("SELECT COUNT(*) FROM posts")
            else:
                cursor.execute("SELECT COUNT(*) FROM posts WHERE feed_id = ?", (feed_id,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        except Error as e:
            logger.error(f"Error counting posts: {e}")
            return 0
        finally:
            cursor.close()
