"""
Per-repository feed polling.

Each tracked repository gets one FeedPoller running its own schedule. A
polling cycle fetches the release feed, tests every item against the
repository's filters and dispatches a notification for each newly
accepted release.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

from release_watcher.dispatcher import Dispatcher
from release_watcher.errors import FeedFetchError, FeedNotFoundError
from release_watcher.filters import FeedItem, Filter
from release_watcher.formatter import format_notification
from release_watcher.rss_parser import FeedParser
from release_watcher.storage import Storage

logger = logging.getLogger(__name__)


class FeedPoller:
    """
    Keep one repository's filters up to date with its release feed.

    Cycles are serialized by a lock, so a forced cycle and the scheduled
    loop never advance the same cursor concurrently. Filter cursors are
    only ever mutated here.
    """

    def __init__(
        self,
        repo: str,
        url: str,
        polling_interval: float,
        parser: FeedParser,
        storage: Storage,
        dispatcher: Dispatcher,
        on_terminate: Callable[["FeedPoller"], Awaitable[None]] | None = None,
    ):
        """
        Initialize the poller.

        Parameters
        ----------
        repo : str
            Repository in ``org/name`` form.
        url : str
            Release feed URL.
        polling_interval : float
            Seconds between scheduled cycles.
        parser : FeedParser
            Feed source.
        storage : Storage
            Store holding cursors and feed definitions.
        dispatcher : Dispatcher
            Router delivering notifications.
        on_terminate : Callable | None
            Coroutine called once the upstream feed is confirmed gone.
        """
        self.repo = repo
        self.url = url
        self.polling_interval = polling_interval
        self.parser = parser
        self.storage = storage
        self.dispatcher = dispatcher
        self.on_terminate = on_terminate
        self.filters: dict[str, Filter] = {}
        self.next_run: float | None = None
        self.terminated = False
        self._lock = asyncio.Lock()

    async def add_filter(self, flt: Filter) -> None:
        """
        Attach a filter, loading its cursor from storage.

        Parameters
        ----------
        flt : Filter
            The filter to attach. Its name must be new for this repository.
        """
        flt.cursor = await self.storage.get_cursor(self.repo, flt.name)
        self.filters[flt.name] = flt
        logger.debug(
            "Filter '%s' attached to %s (last tag %r at %s)",
            flt.name,
            self.repo,
            flt.cursor.last_tag,
            flt.cursor.last_update_time.isoformat(),
        )

    def initialize(self) -> float:
        """
        Schedule the first cycle after a random delay.

        The delay spreads fetches of many feeds over one interval.

        Returns
        -------
        float
            The chosen delay in seconds.
        """
        delay = random.random() * self.polling_interval
        self.next_run = asyncio.get_running_loop().time() + delay
        logger.info(
            "Will process %s in %.1fs with %d filter(s)",
            self.repo,
            delay,
            len(self.filters),
        )
        return delay

    async def run(self) -> None:
        """Run scheduled cycles until the feed is removed or the task is cancelled."""
        if not self.filters:
            logger.warning("No filters to process for %s, exiting", self.repo)
            return

        self.initialize()
        loop = asyncio.get_running_loop()

        while not self.terminated:
            await asyncio.sleep(max(0.0, self.next_run - loop.time()))
            self.next_run += self.polling_interval
            try:
                await self._cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error processing feed %s: %s", self.repo, e)

        logger.info("Poller for %s stopped", self.repo)

    async def force_process(self) -> None:
        """Run one cycle now without touching the schedule."""
        logger.info("Force process triggered for %s", self.repo)
        await self._cycle()

    async def _cycle(self) -> None:
        """Fetch the feed once and evaluate every item."""
        async with self._lock:
            if self.terminated:
                return

            loop = asyncio.get_running_loop()
            started = loop.time()
            filters = list(self.filters.values())
            for flt in filters:
                flt.reset()

            try:
                items = await self.parser.fetch(self.url)
            except FeedNotFoundError as e:
                logger.error("Feed for %s is gone: %s", self.repo, e)
                await self._terminate()
                return
            except FeedFetchError as e:
                logger.error(
                    "Feed fetch failed for %s after %.2fs: %s",
                    self.repo,
                    loop.time() - started,
                    e,
                )
                return

            logger.debug("Received %d item(s) for %s", len(items), self.repo)

            for item in items:
                for flt in filters:
                    await self._process_item(flt, item)
                if all(flt.processed for flt in filters):
                    break

            logger.info(
                "Processed %s in %.2fs",
                self.repo,
                loop.time() - started,
            )

    async def _process_item(self, flt: Filter, item: FeedItem) -> None:
        """Evaluate one item against one filter and announce it if accepted."""
        change = flt.evaluate(item)
        if change is None:
            return

        text = format_notification(self.repo, item, change)
        logger.info(
            "Release %s %s for %s (filter '%s')",
            item.title,
            change.phrase,
            self.repo,
            flt.name,
        )

        try:
            report = await self.dispatcher.dispatch(self.repo, flt.name, text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error sending notification for %s/%s: %s", self.repo, flt.name, e)
        else:
            logger.debug(
                "Dispatch for %s/%s: %d delivered, %d queued, %d unsubscribed",
                self.repo,
                flt.name,
                report.delivered,
                report.queued,
                report.unsubscribed,
            )

        # Advanced whatever the delivery outcome; a crash before the cursor
        # is stored means the release is announced again on restart.
        flt.advance(item)
        try:
            await self.storage.set_cursor(self.repo, flt.name, item.title, item.updated)
        except Exception as e:
            logger.error("Failed to persist cursor for %s/%s: %s", self.repo, flt.name, e)

    async def _terminate(self) -> None:
        """Remove the feed definition and stop polling."""
        self.terminated = True
        try:
            await self.storage.remove_feed_definition(self.repo)
        except Exception as e:
            logger.error("Error removing feed %s: %s", self.repo, e)

        if self.on_terminate is not None:
            await self.on_terminate(self)
