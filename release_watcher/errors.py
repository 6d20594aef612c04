"""
Exception hierarchy for Release Watcher.

Configuration errors are raised synchronously when a feed or filter is
registered; fetch errors are raised by the feed source and handled inside
the polling loop.
"""


class ReleaseWatcherError(Exception):
    """Base class for all Release Watcher errors."""


class ConfigurationError(ReleaseWatcherError):
    """Raised when a feed, filter or endpoint definition is invalid."""


class InvalidRepoError(ConfigurationError):
    """Raised when a repository name is not in ``org/name`` form."""


class InvalidFilterError(ConfigurationError):
    """Raised when a filter name or pattern is invalid."""


class InvalidTemplateError(ConfigurationError):
    """Raised when a message template cannot be formatted."""


class UnknownEndpointError(ConfigurationError):
    """Raised when a subscription references an endpoint that is not configured."""


class FeedFetchError(ReleaseWatcherError):
    """Raised when a feed could not be fetched or parsed."""


class FeedNotFoundError(FeedFetchError):
    """Raised when the upstream feed is permanently gone (HTTP 404)."""


class AlreadyExistsError(ReleaseWatcherError):
    """Raised when a storage record that must be unique already exists."""


class SchemaVersionError(ReleaseWatcherError):
    """Raised when the database was written with an unsupported schema version."""
