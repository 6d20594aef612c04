"""
Main entry point for Release Watcher.

Wires storage, the feed source, endpoints and the feed registry together
and runs until a shutdown signal is received.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from urllib.parse import urlparse

import coloredlogs

from release_watcher.commands import CommandProcessor
from release_watcher.config import load_config
from release_watcher.dispatcher import Dispatcher
from release_watcher.errors import ConfigurationError, SchemaVersionError
from release_watcher.notifier import EndpointSender
from release_watcher.registry import Registry
from release_watcher.resend_queue import ResendQueue
from release_watcher.rss_parser import FeedParser
from release_watcher.storage import Storage
from release_watcher.telegram import TelegramSender

logger = logging.getLogger(__name__)

SENDER_TYPES = {
    "telegram": TelegramSender,
}


def redact_proxy_url(proxy_url: str) -> str:
    """
    Redact credentials from a proxy URL for safe logging.

    Parameters
    ----------
    proxy_url : str
        The proxy URL potentially containing credentials.

    Returns
    -------
    str
        The proxy URL with password redacted.
    """
    try:
        parsed = urlparse(proxy_url)
        if not parsed.password:
            return proxy_url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:****@{netloc}"
        return f"{parsed.scheme}://{netloc}{parsed.path}"
    except ValueError:
        return "<proxy url>"


class ReleaseWatcher:
    """
    Release watcher application.

    Owns every long-lived component and starts and stops them in
    dependency order.
    """

    def __init__(self, config_path: str | Path):
        """
        Initialize the watcher.

        Parameters
        ----------
        config_path : str | Path
            Path to the YAML configuration file.
        """
        self.config = load_config(config_path)
        self.storage: Storage | None = None
        self.parser: FeedParser | None = None
        self.senders: dict[str, EndpointSender] = {}
        self.resend_queues: dict[str, ResendQueue] = {}
        self.dispatcher: Dispatcher | None = None
        self.registry: Registry | None = None
        self._listeners: list[asyncio.Task] = []
        self._stopped = asyncio.Event()

    def _create_senders(self, proxy_url: str | None) -> None:
        for name, endpoint in self.config.endpoints.items():
            sender_type = SENDER_TYPES.get(endpoint.type)
            if sender_type is None:
                raise ConfigurationError(f"Unsupported endpoint type '{endpoint.type}' for '{name}'")
            self.senders[name] = sender_type(name, endpoint, proxy_url=proxy_url)
            logger.debug("Created %s endpoint '%s'", endpoint.type, name)

    async def start(self) -> None:
        """Start every component and wait until stopped."""
        logger.info("Starting Release Watcher")
        self._stopped.clear()

        self.storage = Storage(self.config.storage.database_path)
        try:
            await self.storage.initialize()
        except SchemaVersionError as e:
            logger.error("Cannot open database: %s", e)
            await self.stop()
            sys.exit(1)

        defaults = self.config.defaults
        proxy_url = defaults.proxy
        if proxy_url:
            logger.info("Using proxy: %s", redact_proxy_url(proxy_url))

        self.parser = FeedParser(
            timeout=defaults.request_timeout,
            max_retries=defaults.max_retries,
            user_agent=defaults.user_agent,
            proxy_url=proxy_url,
        )

        self._create_senders(proxy_url)
        for name, sender in self.senders.items():
            if not await sender.test_connection():
                logger.error("Failed to connect endpoint '%s', exiting", name)
                await self.stop()
                sys.exit(1)

        for name, sender in self.senders.items():
            queue = ResendQueue(
                name,
                sender,
                self.storage,
                capacity=self.config.resend.capacity,
                retry_delay=self.config.resend.retry_delay,
            )
            await queue.start()
            self.resend_queues[name] = queue

        self.dispatcher = Dispatcher(self.storage, self.senders, self.resend_queues)
        self.registry = Registry(
            self.storage,
            self.parser,
            self.dispatcher,
            polling_interval=defaults.polling_interval,
            feed_url_template=defaults.feed_url_template,
        )
        await self.registry.start(self.config.feeds)

        for name, sender in self.senders.items():
            endpoint = self.config.endpoints[name]
            if not endpoint.listen_commands:
                continue
            processor = CommandProcessor(
                name,
                self.registry,
                self.storage,
                admin_username=endpoint.admin_username,
                bot_username=getattr(sender, "username", None),
            )
            self._listeners.append(
                asyncio.create_task(sender.listen(processor.handle), name=f"commands-{name}")
            )

        logger.info(
            "Release Watcher started with %d endpoint(s)", len(self.senders)
        )
        await self._stopped.wait()

    async def stop(self) -> None:
        """Stop the watcher gracefully."""
        if self._stopped.is_set():
            return
        logger.info("Stopping Release Watcher")

        for task in self._listeners:
            task.cancel()
        if self._listeners:
            await asyncio.gather(*self._listeners, return_exceptions=True)
        self._listeners.clear()

        if self.registry:
            await self.registry.stop()

        for queue in self.resend_queues.values():
            await queue.stop()
        self.resend_queues.clear()

        if self.parser:
            await self.parser.close()
        for sender in self.senders.values():
            await sender.close()
        self.senders.clear()
        if self.storage:
            await self.storage.close()

        self._stopped.set()
        logger.info("Release Watcher stopped")


def setup_logging(verbose: bool = False) -> None:
    """
    Configure application logging.

    Parameters
    ----------
    verbose : bool
        If True, set log level to DEBUG.
    """
    level = logging.DEBUG if verbose else logging.INFO

    coloredlogs.install(
        level=level,
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from third-party libraries
    for name in ("httpx", "httpcore", "telegram", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Release feed watcher with chat notifications",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args()

    setup_logging(args.verbose)

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("Configuration file not found: %s", config_path)
        sys.exit(1)

    try:
        watcher = ReleaseWatcher(config_path)
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        sys.exit(1)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def signal_handler():
        logger.info("Received shutdown signal")
        loop.create_task(watcher.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(watcher.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        loop.run_until_complete(watcher.stop())
        loop.close()


if __name__ == "__main__":
    main()
