"""Exception hierarchy shared by the store, sync, download and playback layers."""

from typing import Optional


class RcastError(Exception):
    """Base exception for all rcast errors."""

    pass


class StorageError(RcastError):
    """The data store failed to read or write; prior state is unchanged."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class NotFoundError(RcastError):
    """A subscription or episode id does not exist."""

    pass


class NetworkError(RcastError):
    """Transport failure while fetching a feed or an enclosure.

    Attributes:
        retryable: True for transient failures (connection, timeout, 5xx, 429).
        status_code: HTTP status when the server answered, else None.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class ParseError(RcastError):
    """The feed document envelope could not be parsed."""

    pass


class IntegrityError(RcastError):
    """A finished download does not match its expected size."""

    def __init__(self, message: str, expected: Optional[int] = None, actual: Optional[int] = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class StateError(RcastError):
    """Operation is not allowed in the current state."""

    pass


class DuplicateSubscription(StateError):
    """A subscription with the same normalized feed URL already exists."""

    def __init__(self, feed_url: str, existing_id: Optional[str] = None):
        super().__init__(f"Already subscribed to {feed_url}")
        self.feed_url = feed_url
        self.existing_id = existing_id


class AlreadyQueuedOrDownloaded(StateError):
    """enqueue() called for an episode that is not NotDownloaded or Failed."""

    pass


class AlreadyInProgress(StateError):
    """A sync for the same subscription is already running."""

    pass


class SyncError(RcastError):
    """A feed sync failed.

    Attributes:
        kind: One of "network", "timeout", "http", "parse", "storage".
        retryable: Whether calling sync() again later may succeed.
    """

    def __init__(self, message: str, kind: str, retryable: bool):
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable
