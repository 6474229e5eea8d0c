"""
Layer store error classes.

Provides a clear taxonomy of errors raised by the shard stores, the record
codecs and the fetch pipeline. Errors bubble unmodified to the immediate
caller; the CLI maps them to exit codes in one place.
"""
from __future__ import annotations

from typing import Optional


class LayerStoreError(Exception):
    """Base class for all layer store errors."""
    pass


class NotFoundError(LayerStoreError, KeyError):
    """
    Key not present in a store.

    This is an expected cache miss, not a failure: it drives the
    get-then-download flow.
    """

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return str(self.args[0]) if self.args else ""


class StoreIOError(LayerStoreError, OSError):
    """
    Filesystem or device failure underneath a shard store.

    Raised when:
    - A directory or temp file cannot be created
    - A write, fsync or rename fails
    - A stored file cannot be opened for reading
    """
    pass


class StoreClosedError(StoreIOError):
    """Operation attempted on a store bundle after close()."""
    pass


class DigestMismatch(StoreIOError):
    """
    Streamed content did not hash to the expected digest.

    Raised by write_stream() before the value becomes visible, so the key
    keeps its previous value.
    """

    def __init__(self, message: str, expected: str | None = None, actual: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class StoreCorruptionError(LayerStoreError):
    """
    A key was enumerated but its value could not be read.

    Inspection treats this as corruption and stops rather than skipping it.
    """
    pass


class DecodeError(LayerStoreError, ValueError):
    """
    A stored record does not deserialize.

    Indicates corruption or a foreign format in the remote store.
    """
    pass


class NetworkError(LayerStoreError):
    """
    GET failed or returned a non-success status.

    Attributes:
        url: URL that was requested
        status: HTTP status code, or None when no response was received
    """

    def __init__(self, message: str, *, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class FetchCancelled(NetworkError):
    """The caller cancelled an in-flight fetch."""
    pass


__all__ = [
    "LayerStoreError",
    "NotFoundError",
    "StoreIOError",
    "StoreClosedError",
    "DigestMismatch",
    "StoreCorruptionError",
    "DecodeError",
    "NetworkError",
    "FetchCancelled",
]
