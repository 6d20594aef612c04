"""
Release filters and their de-duplication cursors.

A filter is a named title pattern attached to one repository. Its cursor
remembers the last accepted release so that the same item is never
announced twice, while a later edit of the same release is reported as a
description change.
"""

import calendar
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from release_watcher.errors import InvalidFilterError, InvalidRepoError, InvalidTemplateError

logger = logging.getLogger(__name__)

# Maximum length for regex patterns to prevent DoS
MAX_REGEX_PATTERN_LENGTH = 1000

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_NAME_RE = re.compile(r"^[-a-zA-Z0-9_]+$")
_REPO_PART_RE = re.compile(r"^[-a-zA-Z0-9_.]+$")


class ChangeType(Enum):
    """Classification of a matched feed item."""

    NEW_RELEASE = "tagged"
    DESCRIPTION_CHANGE = "description changed"

    @property
    def phrase(self) -> str:
        """Human readable phrase used in notifications."""
        return self.value


@dataclass
class FeedItem:
    """
    Normalized release feed item.

    Attributes
    ----------
    title : str
        Item title, the release tag for GitHub feeds.
    link : str
        Item URL.
    content : str
        Item body in the feed's native markup (HTML).
    updated : datetime | None
        Timezone-aware last update time, None if the feed did not carry one.
    """

    title: str = ""
    link: str = ""
    content: str = ""
    updated: datetime | None = None

    @classmethod
    def from_feedparser(cls, entry: Any) -> "FeedItem":
        """
        Create a FeedItem from a feedparser entry.

        Parameters
        ----------
        entry : Any
            A feedparser entry object.

        Returns
        -------
        FeedItem
            Normalized item instance.
        """
        content = ""
        if entry.get("content"):
            content = entry["content"][0].get("value", "")
        elif entry.get("summary"):
            content = entry["summary"]

        parsed = entry.get("updated_parsed") or entry.get("published_parsed")
        updated = None
        if parsed:
            updated = datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)

        return cls(
            title=entry.get("title", ""),
            link=entry.get("link", ""),
            content=content,
            updated=updated,
        )


@dataclass
class Cursor:
    """Last accepted item of a filter."""

    last_update_time: datetime = EPOCH
    last_tag: str = ""


def validate_repo(repo: str) -> str:
    """
    Check that a repository name is in ``org/name`` form.

    Raises
    ------
    InvalidRepoError
        If the name does not have exactly two valid components.
    """
    parts = repo.split("/")
    if len(parts) != 2:
        raise InvalidRepoError("repo name must follow format `org_or_user/repo_name`")
    if not _REPO_PART_RE.match(parts[0]):
        raise InvalidRepoError(
            f"user/org contains invalid characters, it must match regex `{_REPO_PART_RE.pattern}`"
        )
    if not _REPO_PART_RE.match(parts[1]):
        raise InvalidRepoError(
            f"repo-name contains invalid characters, it must match regex `{_REPO_PART_RE.pattern}`"
        )
    return repo


def validate_filter_name(name: str) -> str:
    """Check that a filter name only uses safe characters."""
    if not _NAME_RE.match(name):
        raise InvalidFilterError(
            f"filter_name contains invalid characters, it must match regex `{_NAME_RE.pattern}`"
        )
    return name


def compile_pattern(pattern: str) -> re.Pattern:
    """
    Compile a title pattern with a length limit.

    Parameters
    ----------
    pattern : str
        The regex pattern to compile.

    Returns
    -------
    re.Pattern
        Compiled pattern.

    Raises
    ------
    InvalidFilterError
        If the pattern is too long or not a valid regular expression.
    """
    if len(pattern) > MAX_REGEX_PATTERN_LENGTH:
        raise InvalidFilterError(
            f"regexp exceeds max length ({len(pattern)} > {MAX_REGEX_PATTERN_LENGTH} chars)"
        )
    try:
        return re.compile(pattern)
    except re.error as e:
        raise InvalidFilterError(f"invalid regexp '{pattern}': {e}") from e


def validate_template(template: str, repo: str) -> str:
    """
    Check that a message template formats with ``repo`` and ``tag``.

    Raises
    ------
    InvalidTemplateError
        If formatting fails.
    """
    try:
        template.format(repo=repo, tag="1.0")
    except (KeyError, IndexError, ValueError) as e:
        raise InvalidTemplateError(f"invalid message pattern '{template}': {e}") from e
    return template


@dataclass
class Filter:
    """
    A named title pattern with its de-duplication cursor.

    Attributes
    ----------
    name : str
        Filter name, unique within a repository.
    pattern : re.Pattern
        Compiled expression searched in item titles.
    message_template : str
        Template formatted with ``repo`` and ``tag``.
    display_name : str
        Label shown when listing feeds.
    cursor : Cursor
        Last accepted item.
    processed : bool
        Set once the filter cannot match any further item of the current
        polling cycle. Never persisted.
    """

    name: str
    pattern: re.Pattern
    message_template: str
    display_name: str = ""
    cursor: Cursor = field(default_factory=Cursor)
    processed: bool = False

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.name

    @classmethod
    def create(
        cls,
        repo: str,
        name: str,
        pattern: str,
        message_template: str,
        display_name: str | None = None,
    ) -> "Filter":
        """
        Validate a definition and build a Filter from it.

        Raises
        ------
        ConfigurationError
            If the name, pattern or template is invalid.
        """
        validate_filter_name(name)
        return cls(
            name=name,
            pattern=compile_pattern(pattern),
            message_template=validate_template(message_template, repo),
            display_name=display_name or name,
        )

    def reset(self) -> None:
        """Start a new polling cycle."""
        self.processed = False

    def evaluate(self, item: FeedItem) -> ChangeType | None:
        """
        Test an item against this filter.

        Items are expected in newest-first order, so an item that is not
        newer than the cursor ends the filter's work for the cycle.

        Parameters
        ----------
        item : FeedItem
            The item to test.

        Returns
        -------
        ChangeType | None
            The change classification if the item must be announced.
        """
        if item.updated is None:
            logger.debug("Item '%s' has no update time, skipping", item.title[:50])
            return None

        if item.updated <= self.cursor.last_update_time:
            self.processed = True

        if self.processed:
            return None

        if not self.pattern.search(item.title):
            logger.debug("Filter '%s' doesn't match '%s'", self.name, item.title[:50])
            return None

        if item.title == self.cursor.last_tag:
            return ChangeType.DESCRIPTION_CHANGE
        return ChangeType.NEW_RELEASE

    def advance(self, item: FeedItem) -> None:
        """Move the cursor to an accepted item and close the filter for this cycle."""
        if item.updated is not None and item.updated > self.cursor.last_update_time:
            self.cursor = Cursor(last_update_time=item.updated, last_tag=item.title)
        self.processed = True
