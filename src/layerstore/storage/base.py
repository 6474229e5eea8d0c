"""
Storage interfaces for the layer store.

These types define the boundary between typed records and the shard stores
that persist them, so heterogeneous record types share one persistence API.
"""
from __future__ import annotations

from enum import Enum
from typing import IO, Iterable, Protocol, runtime_checkable

__all__ = ["RecordKind", "Record", "ByteStream"]

# Type alias for byte streams (file-like or iterable)
ByteStream = IO[bytes] | Iterable[bytes]


class RecordKind(str, Enum):
    """
    Kinds of stored records.

    The value doubles as the name of the backing store's directory, so adding
    a kind adds a store without touching any dispatch code.
    """
    REMOTE = "remote"
    OBJECT = "object"
    DOWNLOAD = "download"


@runtime_checkable
class Record(Protocol):
    """Protocol for records persisted through DownloadStore.store()/get()."""

    @property
    def kind(self) -> RecordKind:
        """Store this record is routed to."""
        ...

    def key(self) -> str:
        """
        Identity key of the record within its store.

        Two records with the same identity must return the same key.
        """
        ...

    def marshal(self) -> bytes:
        """Serialize the record to its stable on-disk form."""
        ...

    def unmarshal(self, data: bytes) -> "Record":
        """
        Build a record of the same type from stored bytes.

        Raises:
            DecodeError: If the bytes are not a valid serialization
        """
        ...
