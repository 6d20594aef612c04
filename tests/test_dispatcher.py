"""
Unit tests for the dispatcher module.

Tests cover routing to subscribed recipients and handling of transient,
permanent and unknown-endpoint failures.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from release_watcher.dispatcher import Dispatcher
from release_watcher.errors import UnknownEndpointError
from release_watcher.notifier import DeliveryStatus
from release_watcher.storage import Storage


@pytest.fixture
def resend_queue() -> MagicMock:
    queue = MagicMock()
    queue.enqueue = AsyncMock()
    return queue


class TestDispatcher:
    """Tests for notification routing."""

    async def test_delivers_to_every_subscriber(
        self, mock_sender: MagicMock, in_memory_storage: Storage
    ) -> None:
        """Test that each recipient gets exactly one attempt."""
        for chat in ("100", "200"):
            await in_memory_storage.add_subscription("telegram", "org/repo", "all", chat)
        dispatcher = Dispatcher(in_memory_storage, {"telegram": mock_sender}, {})

        report = await dispatcher.dispatch("org/repo", "all", "hello")

        assert report.delivered == 2
        assert [c.args for c in mock_sender.send.await_args_list] == [
            ("100", "hello"),
            ("200", "hello"),
        ]

    async def test_only_matching_filter(
        self, mock_sender: MagicMock, in_memory_storage: Storage
    ) -> None:
        """Test that other filters' subscribers are not notified."""
        await in_memory_storage.add_subscription("telegram", "org/repo", "rc", "100")
        dispatcher = Dispatcher(in_memory_storage, {"telegram": mock_sender}, {})

        report = await dispatcher.dispatch("org/repo", "all", "hello")

        assert report.delivered == 0
        mock_sender.send.assert_not_awaited()

    async def test_permanent_failure_unsubscribes(
        self, mock_sender: MagicMock, in_memory_storage: Storage, resend_queue: MagicMock
    ) -> None:
        """Test that a permanent failure removes only that subscription."""
        for chat in ("100", "200"):
            await in_memory_storage.add_subscription("telegram", "repoX/app", "all", chat)
        mock_sender.send.side_effect = [DeliveryStatus.PERMANENT, DeliveryStatus.SUCCESS]
        dispatcher = Dispatcher(
            in_memory_storage, {"telegram": mock_sender}, {"telegram": resend_queue}
        )

        report = await dispatcher.dispatch("repoX/app", "all", "hello")

        assert report.delivered == 1
        assert report.unsubscribed == 1
        assert report.queued == 0
        resend_queue.enqueue.assert_not_awaited()
        assert mock_sender.send.await_count == 2
        assert await in_memory_storage.list_subscribers("telegram", "repoX/app", "all") == ["200"]

    async def test_rejected_message_is_dropped(
        self, mock_sender: MagicMock, in_memory_storage: Storage, resend_queue: MagicMock
    ) -> None:
        """Test that a rejected message is neither queued nor unsubscribed."""
        await in_memory_storage.add_subscription("telegram", "org/repo", "all", "100")
        mock_sender.send.return_value = DeliveryStatus.REJECTED
        dispatcher = Dispatcher(
            in_memory_storage, {"telegram": mock_sender}, {"telegram": resend_queue}
        )

        report = await dispatcher.dispatch("org/repo", "all", "hello")

        assert report.rejected == 1
        assert report.queued == 0
        resend_queue.enqueue.assert_not_awaited()
        assert await in_memory_storage.list_subscribers("telegram", "org/repo", "all") == ["100"]

    async def test_transient_failure_is_queued(
        self, mock_sender: MagicMock, in_memory_storage: Storage, resend_queue: MagicMock
    ) -> None:
        """Test that a transient failure goes to the resend queue."""
        await in_memory_storage.add_subscription("telegram", "org/repo", "all", "100")
        mock_sender.send.return_value = DeliveryStatus.TRANSIENT
        dispatcher = Dispatcher(
            in_memory_storage, {"telegram": mock_sender}, {"telegram": resend_queue}
        )

        report = await dispatcher.dispatch("org/repo", "all", "hello")

        assert report.queued == 1
        queued = resend_queue.enqueue.await_args.args[0]
        assert queued.recipient_id == "100"
        assert queued.text == "hello"
        assert queued.endpoint == "telegram"
        assert queued.repo == "org/repo"
        assert queued.filter_name == "all"
        assert await in_memory_storage.list_subscribers("telegram", "org/repo", "all") == ["100"]

    async def test_sender_exception_is_classified(
        self, mock_sender: MagicMock, in_memory_storage: Storage, resend_queue: MagicMock
    ) -> None:
        """Test that a raising sender is routed by its classification."""
        await in_memory_storage.add_subscription("telegram", "org/repo", "all", "100")
        mock_sender.send.side_effect = RuntimeError("boom")
        dispatcher = Dispatcher(
            in_memory_storage, {"telegram": mock_sender}, {"telegram": resend_queue}
        )

        report = await dispatcher.dispatch("org/repo", "all", "hello")

        mock_sender.classify_error.assert_called_once()
        assert report.queued == 1

    async def test_unknown_endpoint_raises_after_known(
        self, mock_sender: MagicMock, in_memory_storage: Storage
    ) -> None:
        """Test that unknown endpoints are reported without starving known ones."""
        await in_memory_storage.add_subscription("aaa-missing", "org/repo", "all", "1")
        await in_memory_storage.add_subscription("telegram", "org/repo", "all", "100")
        dispatcher = Dispatcher(in_memory_storage, {"telegram": mock_sender}, {})

        with pytest.raises(UnknownEndpointError, match="aaa-missing"):
            await dispatcher.dispatch("org/repo", "all", "hello")

        mock_sender.send.assert_awaited_once_with("100", "hello")

    async def test_duplicate_recipients_not_multiplied(self, mock_sender: MagicMock) -> None:
        """Test that the router delivers once per returned recipient."""
        storage = MagicMock()
        storage.list_subscribed_endpoints = AsyncMock(return_value=["telegram"])
        storage.list_subscribers = AsyncMock(return_value=["A", "B", "A"])
        dispatcher = Dispatcher(storage, {"telegram": mock_sender}, {})

        report = await dispatcher.dispatch("org/repo", "all", "hello")

        assert report.delivered == 3
        assert [c.args[0] for c in mock_sender.send.await_args_list] == ["A", "B", "A"]
