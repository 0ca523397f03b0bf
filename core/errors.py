"""Error taxonomy shared by the scanner, store, pool and watcher."""
from typing import Optional


class IndexerError(Exception):
    """Base class for all library-indexing errors."""


class LibraryIOError(IndexerError):
    """A source path is unreadable, missing or permission-denied.

    The scanner skips the file and records it in the session failure list.
    """

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot read '{path}': {reason}" if reason else f"Cannot read '{path}'")


class DecodeError(IndexerError):
    """The image is corrupt or its format is unsupported by the decoder.

    The row is still recorded, without a cache artifact.
    """

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot decode '{path}': {reason}" if reason else f"Cannot decode '{path}'")


class ValidationError(IndexerError, ValueError):
    """Malformed caller input, raised before any I/O happens."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class StoreError(IndexerError):
    """A database write failed and the current transaction was rolled back."""


class PoolExhaustedError(IndexerError):
    """No connection slot became available under the configured policy."""


class WatcherError(IndexerError):
    """The watch process reported an error or died."""
