"""
Notification routing.

Resolves which endpoints and recipients are subscribed to a repository
filter and hands each recipient one delivery attempt.
"""

import logging
from dataclasses import dataclass

from release_watcher.errors import UnknownEndpointError
from release_watcher.notifier import DeliveryStatus, EndpointSender, NotificationMessage
from release_watcher.resend_queue import ResendQueue
from release_watcher.storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """Outcome counts of one dispatch call."""

    delivered: int = 0
    queued: int = 0
    unsubscribed: int = 0
    rejected: int = 0


class Dispatcher:
    """
    Route notifications to subscribed recipients.

    Transient delivery failures are handed to the endpoint's resend queue;
    permanent ones remove the recipient's subscription and are not retried.
    """

    def __init__(
        self,
        storage: Storage,
        senders: dict[str, EndpointSender],
        resend_queues: dict[str, ResendQueue],
    ):
        """
        Initialize the dispatcher.

        Parameters
        ----------
        storage : Storage
            Subscription store.
        senders : dict[str, EndpointSender]
            Endpoint senders keyed by endpoint name.
        resend_queues : dict[str, ResendQueue]
            Resend queues keyed by endpoint name.
        """
        self.storage = storage
        self.senders = senders
        self.resend_queues = resend_queues

    async def dispatch(self, repo: str, filter_name: str, text: str) -> DispatchReport:
        """
        Deliver a notification to everyone subscribed to a repository filter.

        Parameters
        ----------
        repo : str
            Repository the notification is about.
        filter_name : str
            Filter that matched.
        text : str
            Formatted message body.

        Returns
        -------
        DispatchReport
            Counts of delivered, queued, unsubscribed and rejected recipients.

        Raises
        ------
        UnknownEndpointError
            If a subscription refers to an endpoint that is not configured.
            Known endpoints are served before the error is raised.
        """
        report = DispatchReport()
        unknown: list[str] = []

        endpoints = await self.storage.list_subscribed_endpoints(repo, filter_name)
        logger.debug("Endpoints subscribed to %s/%s: %s", repo, filter_name, endpoints)

        for endpoint in endpoints:
            sender = self.senders.get(endpoint)
            if sender is None:
                unknown.append(endpoint)
                continue

            recipients = await self.storage.list_subscribers(endpoint, repo, filter_name)
            logger.info(
                "Notifying %d recipient(s) on '%s' about %s/%s",
                len(recipients),
                endpoint,
                repo,
                filter_name,
            )
            for recipient_id in recipients:
                await self._deliver(sender, endpoint, repo, filter_name, recipient_id, text, report)

        if unknown:
            raise UnknownEndpointError(
                f"subscriptions for {repo}/{filter_name} reference unknown endpoint(s): "
                + ", ".join(unknown)
            )

        return report

    async def _deliver(
        self,
        sender: EndpointSender,
        endpoint: str,
        repo: str,
        filter_name: str,
        recipient_id: str,
        text: str,
        report: DispatchReport,
    ) -> None:
        """Make one delivery attempt and route its failure."""
        try:
            status = await sender.send(recipient_id, text)
        except Exception as e:
            status = sender.classify_error(e)
            logger.error("Error sending to %s on '%s': %s", recipient_id, endpoint, e)

        if status is DeliveryStatus.SUCCESS:
            report.delivered += 1
            return

        if status is DeliveryStatus.PERMANENT:
            await self._unsubscribe(endpoint, repo, filter_name, recipient_id)
            report.unsubscribed += 1
            return

        if status is DeliveryStatus.REJECTED:
            logger.error(
                "Message for %s/%s rejected by '%s' for %s, not retrying",
                repo,
                filter_name,
                endpoint,
                recipient_id,
            )
            report.rejected += 1
            return

        message = NotificationMessage(
            recipient_id=recipient_id,
            text=text,
            endpoint=endpoint,
            repo=repo,
            filter_name=filter_name,
        )
        queue = self.resend_queues.get(endpoint)
        if queue is None:
            logger.error("No resend queue for '%s', dropping message to %s", endpoint, recipient_id)
            return
        await queue.enqueue(message)
        report.queued += 1

    async def _unsubscribe(
        self, endpoint: str, repo: str, filter_name: str, recipient_id: str
    ) -> None:
        try:
            await self.storage.remove_subscription(endpoint, repo, filter_name, recipient_id)
        except Exception as e:
            logger.warning("Failed to unsubscribe %s: %s", recipient_id, e)
            return

        logger.warning(
            "Unsubscribed %s from %s/%s on '%s': recipient unreachable",
            recipient_id,
            repo,
            filter_name,
            endpoint,
        )
