"""
Per-endpoint retry buffer for failed deliveries.

Messages that could not be delivered because of a transient error are
retried in the background until they succeed. Whatever is still queued
at shutdown is persisted and loaded back on the next start.
"""

import asyncio
import contextlib
import logging

from release_watcher.notifier import DeliveryStatus, EndpointSender, NotificationMessage
from release_watcher.storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000
DEFAULT_RETRY_DELAY = 1.0


class ResendQueue:
    """
    Resend queue owned by one endpoint.

    ``enqueue`` returns immediately while the queue is below capacity and
    blocks the caller once it is full, so messages are never dropped.
    """

    def __init__(
        self,
        endpoint: str,
        sender: EndpointSender,
        storage: Storage,
        capacity: int = DEFAULT_CAPACITY,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        """
        Initialize the resend queue.

        Parameters
        ----------
        endpoint : str
            Name of the endpoint owning the queue.
        sender : EndpointSender
            Sender used for delivery attempts.
        storage : Storage
            Storage used to persist and reload undelivered messages.
        capacity : int
            Maximum number of queued messages.
        retry_delay : float
            Pause in seconds after a failed attempt.
        """
        self.endpoint = endpoint
        self.sender = sender
        self.storage = storage
        self.capacity = capacity
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue[NotificationMessage] = asyncio.Queue()
        # One slot per message owned by the queue, including the one in flight
        self._slots = asyncio.Semaphore(capacity)
        # Seeded messages held beyond capacity
        self._overflow = 0
        self._worker: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    def __len__(self) -> int:
        return self._queue.qsize()

    async def enqueue(self, message: NotificationMessage) -> None:
        """
        Queue a message for another delivery attempt.

        Parameters
        ----------
        message : NotificationMessage
            The message to retry.
        """
        if not message.endpoint:
            message.endpoint = self.endpoint
        if self._slots.locked():
            logger.warning(
                "Resend queue for '%s' is full (%d), waiting for room",
                self.endpoint,
                self.capacity,
            )
        await self._slots.acquire()
        self._queue.put_nowait(message)
        logger.debug(
            "Queued message for %s on '%s' (%d pending)",
            message.recipient_id,
            self.endpoint,
            self._queue.qsize(),
        )

    async def start(self) -> None:
        """
        Queue the persisted messages, then start the retry worker.

        Seeding never waits for room: when more messages were persisted
        than the queue holds, the surplus is kept and new messages wait
        until the backlog is below capacity again.
        """
        self._stopping.clear()

        seeded = await self.storage.load_resend_queue(self.endpoint)
        for message in seeded:
            if not message.endpoint:
                message.endpoint = self.endpoint
            if self._slots.locked():
                self._overflow += 1
            else:
                await self._slots.acquire()
            self._queue.put_nowait(message)
        if seeded:
            logger.info(
                "Loaded %d undelivered message(s) for '%s'", len(seeded), self.endpoint
            )
        if self._overflow:
            logger.warning(
                "Resend queue for '%s' is %d message(s) over capacity",
                self.endpoint,
                self._overflow,
            )

        self._worker = asyncio.create_task(
            self._run(), name=f"resend-{self.endpoint}"
        )

    def _release_slot(self) -> None:
        if self._overflow:
            self._overflow -= 1
        else:
            self._slots.release()

    async def _run(self) -> None:
        """Deliver queued messages one at a time until stopped."""
        while not self._stopping.is_set():
            message = await self._queue.get()
            try:
                await self._attempt(message)
            finally:
                self._queue.task_done()

    async def _attempt(self, message: NotificationMessage) -> None:
        """Try one delivery and decide what happens to the message."""
        try:
            status = await self.sender.send(message.recipient_id, message.text)
        except asyncio.CancelledError:
            # Keep the message so shutdown persists it
            self._queue.put_nowait(message)
            raise
        except Exception as e:
            status = self.sender.classify_error(e)
            logger.error("Error resending to %s: %s", message.recipient_id, e)

        if status is DeliveryStatus.SUCCESS:
            logger.info("Resent message to %s on '%s'", message.recipient_id, self.endpoint)
            self._release_slot()
            return

        if status is DeliveryStatus.PERMANENT:
            self._release_slot()
            await self._drop(message)
            return

        if status is DeliveryStatus.REJECTED:
            self._release_slot()
            logger.error(
                "Dropping message for %s on '%s': rejected by the endpoint",
                message.recipient_id,
                self.endpoint,
            )
            return

        self._queue.put_nowait(message)
        await asyncio.sleep(self.retry_delay)

    async def _drop(self, message: NotificationMessage) -> None:
        """Give up on a message whose recipient can no longer be reached."""
        if not (message.repo and message.filter_name):
            logger.warning(
                "Dropping message for unreachable recipient %s on '%s'",
                message.recipient_id,
                self.endpoint,
            )
            return

        try:
            await self.storage.remove_subscription(
                self.endpoint, message.repo, message.filter_name, message.recipient_id
            )
        except Exception as e:
            logger.warning(
                "Failed to unsubscribe %s from %s/%s: %s",
                message.recipient_id,
                message.repo,
                message.filter_name,
                e,
            )
            return

        logger.warning(
            "Unsubscribed %s from %s/%s on '%s': recipient unreachable",
            message.recipient_id,
            message.repo,
            message.filter_name,
            self.endpoint,
        )

    def drain(self) -> list[NotificationMessage]:
        """Remove and return everything currently queued."""
        messages = []
        while True:
            try:
                messages.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            self._release_slot()
        return messages

    async def stop(self) -> None:
        """Stop the worker and persist undelivered messages."""
        self._stopping.set()
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None

        messages = self.drain()
        if not messages:
            return

        try:
            await self.storage.persist_resend_queue(messages)
        except Exception as e:
            logger.error(
                "Failed to persist %d undelivered message(s) for '%s': %s",
                len(messages),
                self.endpoint,
                e,
            )
