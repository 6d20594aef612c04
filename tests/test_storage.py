"""
Unit tests for the storage module.

Tests cover async SQLite operations for cursors, feed definitions,
subscriptions, and the persisted resend queue.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from release_watcher.config import FeedDefinition
from release_watcher.errors import AlreadyExistsError, SchemaVersionError
from release_watcher.filters import EPOCH, Cursor
from release_watcher.notifier import NotificationMessage
from release_watcher.storage import SCHEMA_VERSION, Storage


class TestStorageInit:
    """Tests for Storage initialization."""

    async def test_creates_db_file(self, tmp_path: Path) -> None:
        """Test that initialize creates the database file."""
        db_path = tmp_path / "data" / "test.db"
        storage = Storage(db_path)

        await storage.initialize()

        assert db_path.exists()
        await storage.close()

    async def test_creates_tables(self, in_memory_storage: Storage) -> None:
        """Test that initialize creates required tables."""
        cursor = await in_memory_storage.connection.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        )
        tables = {row[0] for row in await cursor.fetchall()}

        assert {"last_version", "subscriptions", "feeds", "resend_queue", "schema_version"} <= tables

    async def test_connection_before_initialize(self) -> None:
        """Test that using storage before initialize raises."""
        storage = Storage(":memory:")

        with pytest.raises(RuntimeError, match="not initialized"):
            await storage.get_cursor("org/repo", "all")

    async def test_reopen_keeps_data(self, tmp_path: Path) -> None:
        """Test that data survives closing and reopening the database."""
        db_path = tmp_path / "test.db"
        updated = datetime(2024, 1, 1, tzinfo=timezone.utc)

        async with Storage(db_path) as storage:
            await storage.set_cursor("org/repo", "all", "v1", updated)

        async with Storage(db_path) as storage:
            cursor = await storage.get_cursor("org/repo", "all")

        assert cursor == Cursor(updated, "v1")

    async def test_schema_version_recorded(self, in_memory_storage: Storage) -> None:
        """Test that a new database records the current schema version."""
        cursor = await in_memory_storage.connection.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        )

        assert (await cursor.fetchone())[0] == SCHEMA_VERSION

    async def test_unknown_schema_version_rejected(self, tmp_path: Path) -> None:
        """Test that a database from another schema version is refused."""
        db_path = tmp_path / "test.db"
        async with Storage(db_path) as storage:
            await storage.connection.execute("UPDATE schema_version SET version = 99 WHERE id = 1")
            await storage.connection.commit()

        storage = Storage(db_path)
        with pytest.raises(SchemaVersionError, match="99"):
            await storage.initialize()

        assert storage._connection is None


class TestStorageCursors:
    """Tests for filter cursor persistence."""

    async def test_missing_cursor_is_epoch(self, in_memory_storage: Storage) -> None:
        """Test that an unknown filter starts at the epoch."""
        cursor = await in_memory_storage.get_cursor("org/repo", "all")

        assert cursor.last_update_time == EPOCH
        assert cursor.last_tag == ""

    async def test_set_cursor_upserts(self, in_memory_storage: Storage) -> None:
        """Test that set_cursor overwrites the previous value."""
        first = datetime(2024, 1, 1, tzinfo=timezone.utc)
        second = first + timedelta(days=1)

        await in_memory_storage.set_cursor("org/repo", "all", "v1", first)
        await in_memory_storage.set_cursor("org/repo", "all", "v2", second)

        assert await in_memory_storage.get_cursor("org/repo", "all") == Cursor(second, "v2")

    async def test_cursors_are_per_filter(self, in_memory_storage: Storage) -> None:
        """Test that filters of the same repo keep separate cursors."""
        updated = datetime(2024, 1, 1, tzinfo=timezone.utc)

        await in_memory_storage.set_cursor("org/repo", "stable", "v1", updated)

        assert (await in_memory_storage.get_cursor("org/repo", "rc")).last_tag == ""

    async def test_naive_time_is_utc(self, in_memory_storage: Storage) -> None:
        """Test that naive datetimes are stored as UTC."""
        await in_memory_storage.set_cursor("org/repo", "all", "v1", datetime(2024, 1, 1))

        cursor = await in_memory_storage.get_cursor("org/repo", "all")

        assert cursor.last_update_time == datetime(2024, 1, 1, tzinfo=timezone.utc)

    async def test_invalid_stored_time(self, in_memory_storage: Storage) -> None:
        """Test that a corrupt date falls back to the epoch."""
        await in_memory_storage.connection.execute(
            "INSERT INTO last_version (repo, filter, last_tag, date) VALUES (?, ?, ?, ?)",
            ("org/repo", "all", "v1", "not a date"),
        )

        cursor = await in_memory_storage.get_cursor("org/repo", "all")

        assert cursor == Cursor(EPOCH, "v1")


class TestStorageFeedDefinitions:
    """Tests for persisted feed definitions."""

    async def test_add_and_list(self, in_memory_storage: Storage) -> None:
        """Test storing definitions in insertion order."""
        first = FeedDefinition(repo="org/a", name="all", filter="^v")
        second = FeedDefinition(repo="org/b", name="rc", filter="rc", display_name="RCs")

        assert await in_memory_storage.add_feed_definition(first) is True
        assert await in_memory_storage.add_feed_definition(second) is True

        assert await in_memory_storage.list_feed_definitions() == [first, second]

    async def test_add_duplicate(self, in_memory_storage: Storage) -> None:
        """Test that a duplicate definition is ignored."""
        definition = FeedDefinition(repo="org/a", name="all", filter="^v")
        await in_memory_storage.add_feed_definition(definition)

        assert await in_memory_storage.add_feed_definition(definition) is False
        assert len(await in_memory_storage.list_feed_definitions()) == 1

    async def test_remove_repo(self, in_memory_storage: Storage) -> None:
        """Test removing every definition of a repository."""
        for name in ("all", "rc"):
            await in_memory_storage.add_feed_definition(
                FeedDefinition(repo="org/a", name=name, filter=".*")
            )
        await in_memory_storage.add_feed_definition(
            FeedDefinition(repo="org/b", name="all", filter=".*")
        )

        assert await in_memory_storage.remove_feed_definition("org/a") == 2

        remaining = await in_memory_storage.list_feed_definitions()
        assert [d.repo for d in remaining] == ["org/b"]

    async def test_remove_single_filter(self, in_memory_storage: Storage) -> None:
        """Test removing one filter of a repository."""
        for name in ("all", "rc"):
            await in_memory_storage.add_feed_definition(
                FeedDefinition(repo="org/a", name=name, filter=".*")
            )

        assert await in_memory_storage.remove_feed_definition("org/a", "rc") == 1
        assert [d.name for d in await in_memory_storage.list_feed_definitions()] == ["all"]


class TestStorageSubscriptions:
    """Tests for subscriptions."""

    async def test_add_and_list(self, in_memory_storage: Storage) -> None:
        """Test subscribing recipients."""
        await in_memory_storage.add_subscription("telegram", "org/a", "all", "100")
        await in_memory_storage.add_subscription("telegram", "org/a", "all", "200")
        await in_memory_storage.add_subscription("other", "org/a", "all", "300")

        assert await in_memory_storage.list_subscribed_endpoints("org/a", "all") == [
            "other",
            "telegram",
        ]
        assert await in_memory_storage.list_subscribers("telegram", "org/a", "all") == [
            "100",
            "200",
        ]

    async def test_duplicate_subscription(self, in_memory_storage: Storage) -> None:
        """Test that subscribing twice raises AlreadyExistsError."""
        await in_memory_storage.add_subscription("telegram", "org/a", "all", "100")

        with pytest.raises(AlreadyExistsError):
            await in_memory_storage.add_subscription("telegram", "org/a", "all", "100")

    async def test_remove(self, in_memory_storage: Storage) -> None:
        """Test unsubscribing a recipient."""
        await in_memory_storage.add_subscription("telegram", "org/a", "all", "100")

        assert await in_memory_storage.remove_subscription("telegram", "org/a", "all", "100") is True
        assert await in_memory_storage.remove_subscription("telegram", "org/a", "all", "100") is False
        assert await in_memory_storage.list_subscribed_endpoints("org/a", "all") == []

    async def test_subscriptions_are_per_filter(self, in_memory_storage: Storage) -> None:
        """Test that subscriptions are scoped to a filter."""
        await in_memory_storage.add_subscription("telegram", "org/a", "stable", "100")

        assert await in_memory_storage.list_subscribers("telegram", "org/a", "rc") == []


class TestStorageResendQueue:
    """Tests for the persisted resend queue."""

    async def test_persist_and_load(self, in_memory_storage: Storage) -> None:
        """Test that messages come back in order and are removed."""
        messages = [
            NotificationMessage(str(i), f"text {i}", "telegram", "org/a", "all")
            for i in range(3)
        ]

        await in_memory_storage.persist_resend_queue(messages)

        assert await in_memory_storage.load_resend_queue() == messages
        assert await in_memory_storage.load_resend_queue() == []

    async def test_load_by_endpoint(self, in_memory_storage: Storage) -> None:
        """Test that loading is scoped to one endpoint."""
        await in_memory_storage.persist_resend_queue(
            [
                NotificationMessage("1", "a", "telegram"),
                NotificationMessage("2", "b", "other"),
            ]
        )

        loaded = await in_memory_storage.load_resend_queue("telegram")

        assert [m.recipient_id for m in loaded] == ["1"]
        assert [m.recipient_id for m in await in_memory_storage.load_resend_queue()] == ["2"]

    async def test_persist_empty(self, in_memory_storage: Storage) -> None:
        """Test that persisting nothing is a no-op."""
        await in_memory_storage.persist_resend_queue([])

        assert await in_memory_storage.load_resend_queue() == []
