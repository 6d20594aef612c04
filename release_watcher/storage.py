"""
SQLite storage for feed definitions, subscriptions and cursors.

Provides async database operations so that filter cursors, subscriptions
and undelivered notifications survive restarts.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from release_watcher.config import FeedDefinition
from release_watcher.errors import AlreadyExistsError, SchemaVersionError
from release_watcher.filters import EPOCH, Cursor
from release_watcher.notifier import NotificationMessage

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class Storage:
    """
    Async SQLite storage shared by all feed pollers and resend queues.

    A single connection is used; writes are serialized with an internal
    lock so that concurrent callers never commit each other's partial
    transactions.
    """

    def __init__(self, database_path: str | Path):
        """
        Initialize storage with database path.

        Parameters
        ----------
        database_path : str | Path
            Path to the SQLite database file.
        """
        self.database_path = Path(database_path)
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """
        Initialize the database connection and create tables.

        Creates the database file and parent directories if they don't exist.
        """
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Initializing database at %s", self.database_path)

        self._connection = await aiosqlite.connect(self.database_path)
        await self._create_tables()
        try:
            await self._check_schema_version()
        except SchemaVersionError:
            await self.close()
            raise

    @property
    def connection(self) -> aiosqlite.Connection:
        """Open connection, raising if initialize() was not called."""
        if self._connection is None:
            raise RuntimeError("Database not initialized")
        return self._connection

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        conn = self.connection

        await conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS schema_version (
                id INTEGER PRIMARY KEY,
                version INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS last_version (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                repo TEXT NOT NULL,
                filter TEXT NOT NULL,
                last_tag TEXT NOT NULL DEFAULT '',
                date TEXT NOT NULL,
                UNIQUE(repo, filter)
            );

            CREATE TABLE IF NOT EXISTS subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                endpoint TEXT NOT NULL,
                repo TEXT NOT NULL,
                filter TEXT NOT NULL,
                chat_id TEXT NOT NULL,
                UNIQUE(endpoint, repo, filter, chat_id)
            );

            CREATE TABLE IF NOT EXISTS feeds (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                repo TEXT NOT NULL,
                name TEXT NOT NULL,
                filter TEXT NOT NULL,
                display_name TEXT,
                message_pattern TEXT NOT NULL,
                UNIQUE(repo, name)
            );

            CREATE TABLE IF NOT EXISTS resend_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                endpoint TEXT NOT NULL,
                chat_id TEXT NOT NULL,
                repo TEXT NOT NULL DEFAULT '',
                filter TEXT NOT NULL DEFAULT '',
                message TEXT NOT NULL
            );

            INSERT OR IGNORE INTO schema_version (id, version) VALUES (1, {SCHEMA_VERSION});
        """)

        await conn.commit()
        logger.debug("Database tables created/verified")

    async def _check_schema_version(self) -> None:
        """
        Refuse databases written with another schema version.

        Raises
        ------
        SchemaVersionError
            If the stored version differs from SCHEMA_VERSION.
        """
        cursor = await self.connection.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        )
        row = await cursor.fetchone()
        version = row[0] if row else None
        if version != SCHEMA_VERSION:
            raise SchemaVersionError(
                f"database {self.database_path} has schema version {version}, "
                f"expected {SCHEMA_VERSION}"
            )
        logger.debug("Database schema version %d", version)

    # Cursors

    async def get_cursor(self, repo: str, filter_name: str) -> Cursor:
        """
        Get the last accepted item of a filter.

        Parameters
        ----------
        repo : str
            Repository the filter belongs to.
        filter_name : str
            Name of the filter.

        Returns
        -------
        Cursor
            Stored cursor, or an epoch cursor if none was recorded.
        """
        cursor = await self.connection.execute(
            "SELECT date, last_tag FROM last_version WHERE repo = ? AND filter = ?",
            (repo, filter_name),
        )
        row = await cursor.fetchone()
        if row is None:
            return Cursor()
        return Cursor(last_update_time=_parse_time(row[0]), last_tag=row[1])

    async def set_cursor(
        self, repo: str, filter_name: str, tag: str, updated: datetime
    ) -> None:
        """
        Record the last accepted item of a filter.

        Parameters
        ----------
        repo : str
            Repository the filter belongs to.
        filter_name : str
            Name of the filter.
        tag : str
            Title of the accepted item.
        updated : datetime
            Update time of the accepted item.
        """
        async with self._lock:
            await self.connection.execute(
                """
                INSERT INTO last_version (repo, filter, last_tag, date)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(repo, filter) DO UPDATE
                SET last_tag = excluded.last_tag, date = excluded.date
                """,
                (repo, filter_name, tag, _format_time(updated)),
            )
            await self.connection.commit()
        logger.debug("Cursor for %s/%s set to %s", repo, filter_name, tag)

    # Feed definitions

    async def add_feed_definition(self, definition: FeedDefinition) -> bool:
        """
        Persist a feed definition.

        Parameters
        ----------
        definition : FeedDefinition
            The definition to store.

        Returns
        -------
        bool
            True if the definition was new.
        """
        async with self._lock:
            cursor = await self.connection.execute(
                """
                INSERT OR IGNORE INTO feeds (repo, name, filter, display_name, message_pattern)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    definition.repo,
                    definition.name,
                    definition.filter,
                    definition.display_name,
                    definition.message_pattern,
                ),
            )
            await self.connection.commit()
        return cursor.rowcount > 0

    async def list_feed_definitions(self) -> list[FeedDefinition]:
        """Return every persisted feed definition in insertion order."""
        cursor = await self.connection.execute(
            "SELECT repo, name, filter, display_name, message_pattern FROM feeds ORDER BY id"
        )
        rows = await cursor.fetchall()
        return [
            FeedDefinition(
                repo=repo,
                name=name,
                filter=pattern,
                display_name=display_name,
                message_pattern=message_pattern,
            )
            for repo, name, pattern, display_name, message_pattern in rows
        ]

    async def remove_feed_definition(self, repo: str, filter_name: str | None = None) -> int:
        """
        Remove feed definitions of a repository.

        Parameters
        ----------
        repo : str
            Repository to remove.
        filter_name : str | None
            If provided, remove only this filter.

        Returns
        -------
        int
            Number of definitions removed.
        """
        async with self._lock:
            if filter_name is None:
                cursor = await self.connection.execute(
                    "DELETE FROM feeds WHERE repo = ?", (repo,)
                )
            else:
                cursor = await self.connection.execute(
                    "DELETE FROM feeds WHERE repo = ? AND name = ?", (repo, filter_name)
                )
            await self.connection.commit()

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info("Removed %d feed definition(s) for %s", deleted, repo)
        return deleted

    # Subscriptions

    async def add_subscription(
        self, endpoint: str, repo: str, filter_name: str, recipient_id: str
    ) -> None:
        """
        Subscribe a recipient to a repository filter.

        Raises
        ------
        AlreadyExistsError
            If the recipient is already subscribed.
        """
        async with self._lock:
            cursor = await self.connection.execute(
                """
                INSERT OR IGNORE INTO subscriptions (endpoint, repo, filter, chat_id)
                VALUES (?, ?, ?, ?)
                """,
                (endpoint, repo, filter_name, str(recipient_id)),
            )
            await self.connection.commit()

        if cursor.rowcount == 0:
            raise AlreadyExistsError("already subscribed")

    async def remove_subscription(
        self, endpoint: str, repo: str, filter_name: str, recipient_id: str
    ) -> bool:
        """
        Unsubscribe a recipient from a repository filter.

        Returns
        -------
        bool
            True if a subscription was removed.
        """
        async with self._lock:
            cursor = await self.connection.execute(
                """
                DELETE FROM subscriptions
                WHERE endpoint = ? AND repo = ? AND filter = ? AND chat_id = ?
                """,
                (endpoint, repo, filter_name, str(recipient_id)),
            )
            await self.connection.commit()
        return cursor.rowcount > 0

    async def list_subscribed_endpoints(self, repo: str, filter_name: str) -> list[str]:
        """Return the distinct endpoint names subscribed to a repository filter."""
        cursor = await self.connection.execute(
            "SELECT DISTINCT endpoint FROM subscriptions WHERE repo = ? AND filter = ? ORDER BY endpoint",
            (repo, filter_name),
        )
        return [row[0] for row in await cursor.fetchall()]

    async def list_subscribers(self, endpoint: str, repo: str, filter_name: str) -> list[str]:
        """Return the recipients registered under an endpoint for a repository filter."""
        cursor = await self.connection.execute(
            """
            SELECT chat_id FROM subscriptions
            WHERE endpoint = ? AND repo = ? AND filter = ?
            ORDER BY id
            """,
            (endpoint, repo, filter_name),
        )
        return [row[0] for row in await cursor.fetchall()]

    # Resend queue

    async def persist_resend_queue(self, messages: list[NotificationMessage]) -> None:
        """
        Store undelivered messages until the next start.

        Parameters
        ----------
        messages : list[NotificationMessage]
            Messages drained from a resend queue.
        """
        if not messages:
            return

        async with self._lock:
            await self.connection.executemany(
                """
                INSERT INTO resend_queue (endpoint, chat_id, repo, filter, message)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (m.endpoint, str(m.recipient_id), m.repo, m.filter_name, m.text)
                    for m in messages
                ],
            )
            await self.connection.commit()
        logger.info("Persisted %d undelivered message(s)", len(messages))

    async def load_resend_queue(self, endpoint: str | None = None) -> list[NotificationMessage]:
        """
        Load and remove persisted undelivered messages.

        Parameters
        ----------
        endpoint : str | None
            If provided, load only messages owned by this endpoint.

        Returns
        -------
        list[NotificationMessage]
            Messages in the order they were persisted.
        """
        async with self._lock:
            if endpoint is None:
                cursor = await self.connection.execute(
                    "SELECT id, endpoint, chat_id, repo, filter, message FROM resend_queue ORDER BY id"
                )
            else:
                cursor = await self.connection.execute(
                    """
                    SELECT id, endpoint, chat_id, repo, filter, message FROM resend_queue
                    WHERE endpoint = ? ORDER BY id
                    """,
                    (endpoint,),
                )
            rows = await cursor.fetchall()

            if rows:
                await self.connection.executemany(
                    "DELETE FROM resend_queue WHERE id = ?",
                    [(row[0],) for row in rows],
                )
                await self.connection.commit()

        return [
            NotificationMessage(
                recipient_id=chat_id,
                text=message,
                endpoint=owner,
                repo=repo,
                filter_name=filter_name,
            )
            for _, owner, chat_id, repo, filter_name, message in rows
        ]

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.debug("Database connection closed")

    async def __aenter__(self) -> "Storage":
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_time(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Invalid stored cursor time '%s', using epoch", value)
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
