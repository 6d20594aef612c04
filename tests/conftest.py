"""
Shared fixtures for Release Watcher tests.

Provides common test fixtures for use across all test modules.
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from release_watcher.config import AppConfig, EndpointConfig
from release_watcher.filters import FeedItem
from release_watcher.notifier import DeliveryStatus
from release_watcher.storage import Storage


# Path to test fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"


def make_item(title: str, day: int, content: str = "<p>notes</p>") -> FeedItem:
    """Build a release item updated on the given day of January 2024."""
    return FeedItem(
        title=title,
        link=f"https://github.com/org/repo/releases/tag/{title}",
        content=content,
        updated=datetime(2024, 1, day, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def item_factory():
    """Return a factory building dated release items."""
    return make_item


@pytest.fixture
def fixtures_dir() -> Path:
    """Return path to fixtures directory."""
    return FIXTURES_DIR


@pytest.fixture
def sample_config_path(fixtures_dir: Path) -> Path:
    """Return path to sample config file."""
    return fixtures_dir / "sample_config.yaml"


@pytest.fixture
def sample_atom_content(fixtures_dir: Path) -> str:
    """Return contents of the sample GitHub releases feed."""
    return (fixtures_dir / "sample_releases.atom").read_text()


@pytest.fixture
def sample_item() -> FeedItem:
    """Create a sample release item for testing."""
    return FeedItem(
        title="v1.2.0",
        link="https://github.com/lomik/go-carbon/releases/tag/v1.2.0",
        content="<p>Bug fixes and <b>performance</b> improvements.</p>",
        updated=datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc),
    )


@pytest.fixture
def minimal_endpoint_config() -> EndpointConfig:
    """Create a minimal valid Telegram endpoint configuration."""
    return EndpointConfig(token="1234567890:ABCdefGHIjklMNOpqrsTUVwxyz")


@pytest.fixture
def minimal_config_dict() -> dict[str, Any]:
    """
    Create a minimal valid configuration dictionary.

    Returns
    -------
    dict
        Configuration dictionary that can be used to create AppConfig.
    """
    return {
        "endpoints": {
            "telegram": {
                "token": "1234567890:ABCdefGHIjklMNOpqrsTUVwxyz",
            },
        },
    }


@pytest.fixture
def minimal_app_config(minimal_config_dict: dict[str, Any]) -> AppConfig:
    """Create a minimal valid app configuration."""
    return AppConfig.model_validate(minimal_config_dict)


@pytest_asyncio.fixture
async def in_memory_storage() -> AsyncGenerator[Storage, None]:
    """
    Create an in-memory SQLite storage for testing.

    Yields
    ------
    Storage
        An initialized in-memory storage instance.
    """
    storage = Storage(":memory:")
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture
def mock_sender() -> MagicMock:
    """
    Create a mock endpoint sender that always succeeds.

    Returns
    -------
    MagicMock
        A sender with ``send`` returning SUCCESS.
    """
    sender = MagicMock()
    sender.name = "telegram"
    sender.send = AsyncMock(return_value=DeliveryStatus.SUCCESS)
    sender.classify_error = MagicMock(return_value=DeliveryStatus.TRANSIENT)
    sender.test_connection = AsyncMock(return_value=True)
    sender.close = AsyncMock()
    return sender


@pytest.fixture
def mock_telegram_bot() -> MagicMock:
    """
    Create a mock Telegram bot.

    Returns
    -------
    MagicMock
        A mock Bot instance with common methods mocked.
    """
    bot = MagicMock()
    bot.send_message = AsyncMock()
    bot.get_me = AsyncMock(return_value=MagicMock(username="release_bot"))
    bot.get_updates = AsyncMock(return_value=[])
    bot.get_chat_administrators = AsyncMock(return_value=[])
    bot.shutdown = AsyncMock()
    return bot


@pytest.fixture
def feedparser_entry() -> dict[str, Any]:
    """
    Create a sample feedparser entry dictionary.

    Returns
    -------
    dict
        A dictionary mimicking feedparser entry structure.
    """
    return {
        "title": "v2.0.0",
        "link": "https://github.com/org/repo/releases/tag/v2.0.0",
        "id": "tag:github.com,2008:Repository/1/v2.0.0",
        "summary": "Short summary",
        "content": [{"value": "<p>Full release notes</p>"}],
        "updated_parsed": (2024, 1, 10, 8, 0, 0, 2, 10, 0),
    }
