#!/usr/bin/env python3
"""
Database models and operations for the Feed Sync engine.

This module contains the record types shared across the engine and the
``DatabaseQueue``, which owns the single sqlite connection and serialises every
operation through an asyncio queue. Each public method on the queue is one
unit of work and is invoked by name through ``execute``.
"""

from dataclasses import dataclass
from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any

from config import config, get_logger
from errors import StorageError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")


@dataclass
class Channel:
    """A registered feed source."""

    id: int
    name: str
    url: str
    registration_timestamp: int
    last_update: Optional[int] = None
    failure_count: int = 0
    disabled: bool = False


@dataclass
class NewEntry:
    """An entry that passed deduplication and is ready to be persisted."""

    channel_id: int
    guid: Optional[str]
    title: Optional[str]
    url: Optional[str]
    content: Optional[str]
    fetch_timestamp: int
    publish_timestamp: int


@dataclass
class FanoutResult:
    """Outcome of one committed fan-out transaction."""

    channel_id: int
    entries_inserted: int
    states_created: int
    subscriber_count: int
    last_update: int


@dataclass
class ChannelError:
    """One row of the failure log."""

    id: int
    channel_id: int
    error_timestamp: int
    error_reason: str


def _row_to_channel(row) -> Channel:
    return Channel(
        id=row['id'],
        name=row['name'],
        url=row['url'],
        registration_timestamp=row['registration_timestamp'],
        last_update=row['last_update'],
        failure_count=row['failure_count'] or 0,
        disabled=bool(row['disabled']),
    )


def initialize_database(conn) -> None:
    """Initialize the database with the schema from schema.sql.

    Every statement in the schema is ``IF NOT EXISTS`` so this is safe to run
    against an existing database.
    """
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='channels'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
        cursor.executescript(_read_schema_file())
        conn.commit()
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
    """A queue for database operations to ensure serialised access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, apply the schema and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys=ON")
        initialize_database(self.conn)

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

        # Release anyone still waiting so they do not hang forever
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

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
                    if method is None or operation_name.startswith('_'):
                        raise AttributeError(f"Unknown operation: {operation_name}")
                    self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
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
        """Execute a database operation by name.

        Raises:
            StorageError: the operation failed inside sqlite (already rolled back).
            RuntimeError: the queue is not running.
        """
        if not self.running:
            raise RuntimeError("Database queue is not running. Call start() first.")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise RuntimeError(f"Database queue stopped before {operation_name} completed")

            error = result.get("error")
            if isinstance(error, Error):
                raise StorageError(f"{operation_name} failed: {error}") from error
            if error is not None:
                raise error

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Channel registry operations
    def register_channel(self, name: str, url: str, now: Optional[int] = None) -> int:
        """Register a channel (no-op when the URL is known) and return its id."""
        current_time = now if now is not None else int(time())
        with self.conn:
            self.conn.execute(
                "INSERT OR IGNORE INTO channels (name, url, registration_timestamp) VALUES (?, ?, ?)",
                (name, url, current_time)
            )
            row = self.conn.execute("SELECT id FROM channels WHERE url = ?", (url,)).fetchone()
        return row['id']

    def get_channel(self, channel_id: int) -> Optional[Channel]:
        """Get a channel by its id."""
        row = self.conn.execute("SELECT * FROM channels WHERE id = ?", (channel_id,)).fetchone()
        return _row_to_channel(row) if row else None

    def list_channels(self) -> List[Channel]:
        """List every channel, enabled or not."""
        rows = self.conn.execute("SELECT * FROM channels ORDER BY id").fetchall()
        return [_row_to_channel(row) for row in rows]

    def list_enabled_channels(self) -> List[Channel]:
        """List the channels a sync cycle should visit."""
        rows = self.conn.execute("SELECT * FROM channels WHERE disabled = 0 ORDER BY id").fetchall()
        return [_row_to_channel(row) for row in rows]

    # Subscriber directory operations
    def subscribe_user(self, user_id: int, channel_id: int, name: Optional[str] = None,
                       notes: Optional[str] = None, now: Optional[int] = None) -> int:
        """Subscribe a user to a channel and link the channel's existing entries.

        Returns:
            Number of user-entry rows created by the backlog link.
        """
        current_time = now if now is not None else int(time())
        with self.conn:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO channel_users (channel_id, user_id, name, notes, registration_timestamp)
                VALUES (?, ?, COALESCE(?, (SELECT name FROM channels WHERE id = ?)), ?, ?)
                """,
                (channel_id, user_id, name, channel_id, notes, current_time)
            )
            cursor.execute(
                """
                INSERT OR IGNORE INTO users_items (user_id, item_id, channel_id, read, starred)
                SELECT ?, id, channel_id, 0, 0 FROM items WHERE channel_id = ?
                """,
                (user_id, channel_id)
            )
            linked = cursor.rowcount
            cursor.close()
        logger.debug(f"Subscribed user {user_id} to channel {channel_id} ({linked} existing entries linked)")
        return linked

    def get_subscriber_ids(self, channel_id: int) -> List[int]:
        """Return the user ids currently subscribed to a channel."""
        rows = self.conn.execute(
            "SELECT user_id FROM channel_users WHERE channel_id = ? ORDER BY user_id", (channel_id,)
        ).fetchall()
        return [row[0] for row in rows]

    # Entry operations
    def get_channel_guids(self, channel_id: int) -> Set[str]:
        """Return every non-null guid already stored for a channel."""
        rows = self.conn.execute(
            "SELECT guid FROM items WHERE channel_id = ? AND guid IS NOT NULL", (channel_id,)
        ).fetchall()
        return {row[0] for row in rows}

    def list_user_states(self, channel_id: int) -> List[Dict[str, Any]]:
        """List user-entry state rows for a channel."""
        rows = self.conn.execute(
            "SELECT user_id, item_id, channel_id, read, starred FROM users_items WHERE channel_id = ? ORDER BY item_id, user_id",
            (channel_id,)
        ).fetchall()
        return [dict(row) for row in rows]

    def count_items(self, channel_id: Optional[int] = None) -> int:
        """Count entries, optionally for a single channel."""
        if channel_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM items").fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM items WHERE channel_id = ?", (channel_id,)).fetchone()
        return int(row[0]) if row else 0

    def count_user_states(self, channel_id: Optional[int] = None) -> int:
        """Count user-entry state rows, optionally for a single channel."""
        if channel_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM users_items").fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM users_items WHERE channel_id = ?", (channel_id,)).fetchone()
        return int(row[0]) if row else 0

    # Fan-out operations
    def commit_new_entries(self, channel_id: int, entries: List[NewEntry], now: int) -> FanoutResult:
        """Persist new entries, fan them out to subscribers and stamp the channel.

        Everything runs in one transaction: a failure at any step rolls back
        the entry inserts too, so no entry is ever left without its user state.
        A guid that another writer stored in the meantime is ignored rather
        than treated as an error.
        """
        with self.conn:
            cursor = self.conn.cursor()
            try:
                item_ids: List[int] = []
                for entry in entries:
                    cursor.execute(
                        """
                        INSERT OR IGNORE INTO items
                            (guid, title, url, content, fetch_timestamp, publish_timestamp, channel_id)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            entry.guid,
                            entry.title,
                            entry.url,
                            entry.content,
                            entry.fetch_timestamp,
                            entry.publish_timestamp,
                            channel_id,
                        )
                    )
                    if cursor.rowcount > 0:
                        item_ids.append(cursor.lastrowid)

                cursor.execute("SELECT user_id FROM channel_users WHERE channel_id = ?", (channel_id,))
                user_ids = [row[0] for row in cursor.fetchall()]

                states_created = 0
                if item_ids and user_ids:
                    cursor.executemany(
                        """
                        INSERT OR IGNORE INTO users_items (user_id, item_id, channel_id, read, starred)
                        VALUES (?, ?, ?, 0, 0)
                        """,
                        [(user_id, item_id, channel_id) for item_id in item_ids for user_id in user_ids]
                    )
                    states_created = cursor.rowcount

                cursor.execute("UPDATE channels SET last_update = ? WHERE id = ?", (now, channel_id))
                if cursor.rowcount == 0:
                    raise Error(f"channel {channel_id} does not exist")
            finally:
                cursor.close()

        return FanoutResult(
            channel_id=channel_id,
            entries_inserted=len(item_ids),
            states_created=states_created,
            subscriber_count=len(user_ids),
            last_update=now,
        )

    # Failure tracking operations
    def record_channel_failure(self, channel_id: int, reason: str, now: Optional[int] = None) -> int:
        """Increment the failure counter and append to the failure log.

        Returns:
            The channel's new failure count.
        """
        current_time = now if now is not None else int(time())
        with self.conn:
            cursor = self.conn.cursor()
            try:
                cursor.execute(
                    "UPDATE channels SET failure_count = failure_count + 1 WHERE id = ?", (channel_id,)
                )
                if cursor.rowcount == 0:
                    raise Error(f"channel {channel_id} does not exist")
                cursor.execute(
                    "INSERT INTO channels_errors (channel_id, error_timestamp, error_reason) VALUES (?, ?, ?)",
                    (channel_id, current_time, reason)
                )
                cursor.execute("SELECT failure_count FROM channels WHERE id = ?", (channel_id,))
                return cursor.fetchone()[0]
            finally:
                cursor.close()

    def disable_channels_above(self, threshold: int) -> int:
        """Disable every enabled channel whose failure count reached the threshold."""
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE channels SET disabled = 1 WHERE disabled = 0 AND failure_count >= ?", (threshold,)
            )
            disabled = cursor.rowcount
        return disabled

    def enable_channel(self, channel_id: int) -> bool:
        """Re-enable a channel and clear its failure counter."""
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE channels SET disabled = 0, failure_count = 0 WHERE id = ?", (channel_id,)
            )
            found = cursor.rowcount > 0
        if not found:
            logger.warning(f"No channel found with ID {channel_id} to re-enable")
        return found

    def list_channel_errors(self, channel_id: int, limit: int = 50) -> List[ChannelError]:
        """Return the most recent failure log rows of a channel, newest first."""
        rows = self.conn.execute(
            """
            SELECT id, channel_id, error_timestamp, error_reason
            FROM channels_errors WHERE channel_id = ?
            ORDER BY error_timestamp DESC, id DESC
            LIMIT ?
            """,
            (channel_id, limit)
        ).fetchall()
        return [
            ChannelError(
                id=row['id'],
                channel_id=row['channel_id'],
                error_timestamp=row['error_timestamp'],
                error_reason=row['error_reason'],
            )
            for row in rows
        ]
