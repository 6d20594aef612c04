"""
Registry of running feed pollers.

Owns the table of tracked repositories, creates a poller for the first
filter of a repository and attaches further filters to the existing
poller. Every poller runs in its own task whose handle is kept here so
pollers can be stopped deterministically.
"""

import asyncio
import contextlib
import logging

from release_watcher.config import DEFAULT_MESSAGE_PATTERN, FeedDefinition
from release_watcher.dispatcher import Dispatcher
from release_watcher.errors import AlreadyExistsError, ConfigurationError
from release_watcher.filters import Filter, validate_repo
from release_watcher.poller import FeedPoller
from release_watcher.rss_parser import FeedParser
from release_watcher.storage import Storage

logger = logging.getLogger(__name__)


class Registry:
    """
    Process-wide table of feed pollers keyed by repository.

    The table is guarded by one lock, held only while it is read or
    mutated and never across network or storage calls.
    """

    def __init__(
        self,
        storage: Storage,
        parser: FeedParser,
        dispatcher: Dispatcher,
        polling_interval: float,
        feed_url_template: str,
    ):
        """
        Initialize the registry.

        Parameters
        ----------
        storage : Storage
            Store for feed definitions and cursors.
        parser : FeedParser
            Feed source shared by all pollers.
        dispatcher : Dispatcher
            Router shared by all pollers.
        polling_interval : float
            Default seconds between polls.
        feed_url_template : str
            Template turning a repository into its feed URL.
        """
        self.storage = storage
        self.parser = parser
        self.dispatcher = dispatcher
        self.polling_interval = polling_interval
        self.feed_url_template = feed_url_template
        self._pollers: dict[str, FeedPoller] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._running = False

    def feed_url(self, repo: str) -> str:
        """Return the release feed URL of a repository."""
        return self.feed_url_template.format(repo=repo)

    async def start(self, definitions: list[FeedDefinition] | None = None) -> None:
        """
        Start pollers for every persisted definition.

        Parameters
        ----------
        definitions : list[FeedDefinition] | None
            Additional definitions, e.g. from the configuration file.
            Definitions already known are skipped.
        """
        self._running = True

        persisted = await self.storage.list_feed_definitions()
        for definition in persisted + list(definitions or []):
            if await self.has_filter(definition.repo, definition.name):
                continue
            try:
                await self.register_feed(
                    definition.repo,
                    definition.name,
                    definition.display_name,
                    definition.filter,
                    definition.message_pattern,
                )
            except ConfigurationError as e:
                logger.error(
                    "Skipping invalid feed definition %s/%s: %s",
                    definition.repo,
                    definition.name,
                    e,
                )

        configured = await self.list_configured_feeds()
        logger.info("Registry started with %d filter(s)", len(configured))

    async def register_feed(
        self,
        repo: str,
        filter_name: str,
        display_name: str | None,
        pattern: str,
        message_template: str = DEFAULT_MESSAGE_PATTERN,
    ) -> FeedPoller:
        """
        Register a filter for a repository, creating its poller if needed.

        Parameters
        ----------
        repo : str
            Repository in ``org/name`` form.
        filter_name : str
            Filter name, unique within the repository.
        display_name : str | None
            Label shown when listing feeds.
        pattern : str
            Regular expression matched against release titles.
        message_template : str
            Template formatted with ``repo`` and ``tag``.

        Returns
        -------
        FeedPoller
            The poller owning the filter.

        Raises
        ------
        ConfigurationError
            If the repository, filter or template is invalid.
        AlreadyExistsError
            If the filter is already registered for the repository.
        """
        validate_repo(repo)
        flt = Filter.create(repo, filter_name, pattern, message_template, display_name)

        async with self._lock:
            poller = self._pollers.get(repo)
            if poller is not None and filter_name in poller.filters:
                raise AlreadyExistsError(f"filter '{filter_name}' already exists for {repo}")

        await self.storage.add_feed_definition(
            FeedDefinition(
                repo=repo,
                name=filter_name,
                filter=pattern,
                display_name=display_name,
                message_pattern=message_template,
            )
        )

        async with self._lock:
            poller = self._pollers.get(repo)
            is_new = poller is None
            if is_new:
                logger.debug("Creating first configuration for %s", repo)
                poller = FeedPoller(
                    repo=repo,
                    url=self.feed_url(repo),
                    polling_interval=self.polling_interval,
                    parser=self.parser,
                    storage=self.storage,
                    dispatcher=self.dispatcher,
                    on_terminate=self._on_terminate,
                )
                self._pollers[repo] = poller
            else:
                logger.debug("Adding filter '%s' to existing repo %s", filter_name, repo)

        await poller.add_filter(flt)

        if is_new and self._running:
            async with self._lock:
                self._tasks[repo] = asyncio.create_task(poller.run(), name=f"feed-{repo}")

        logger.info("Registered filter '%s' for %s", filter_name, repo)
        return poller

    async def has_filter(self, repo: str, filter_name: str) -> bool:
        """Whether a filter is registered for a repository."""
        async with self._lock:
            poller = self._pollers.get(repo)
            return poller is not None and filter_name in poller.filters

    async def get(self, repo: str) -> FeedPoller | None:
        """Return the poller of a repository, if any."""
        async with self._lock:
            return self._pollers.get(repo)

    async def force_process(self, repo: str) -> bool:
        """
        Run one immediate cycle for a repository.

        Parameters
        ----------
        repo : str
            Repository to process.

        Returns
        -------
        bool
            False if the repository is not tracked.
        """
        async with self._lock:
            poller = self._pollers.get(repo)

        if poller is None:
            logger.warning("Force process requested for unknown repo %s", repo)
            return False

        await poller.force_process()
        return True

    async def list_configured_feeds(self) -> list[tuple[str, str]]:
        """Snapshot of registered ``(repo, filter_name)`` pairs."""
        async with self._lock:
            return [
                (repo, name)
                for repo, poller in self._pollers.items()
                for name in poller.filters
            ]

    async def list_display_names(self) -> list[tuple[str, str, str]]:
        """Snapshot of registered ``(repo, filter_name, display_name)`` triples."""
        async with self._lock:
            return [
                (repo, flt.name, flt.display_name)
                for repo, poller in self._pollers.items()
                for flt in poller.filters.values()
            ]

    async def _on_terminate(self, poller: FeedPoller) -> None:
        """Drop a poller whose upstream feed is gone."""
        async with self._lock:
            if self._pollers.get(poller.repo) is poller:
                del self._pollers[poller.repo]
            task = self._tasks.pop(poller.repo, None)

        logger.warning("Removed feed %s: upstream feed no longer exists", poller.repo)

        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def stop(self) -> None:
        """Cancel every poller task and wait for them to finish."""
        self._running = False
        async with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()

        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        logger.info("Stopped %d feed poller(s)", len(tasks))
