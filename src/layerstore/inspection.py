"""
Read-only inspection of the store bundle.

dump() walks every key of every store and yields a short preview of each
value, for diagnostics. A key that is listed but cannot be read is treated
as corruption and stops the walk.
"""
from __future__ import annotations

import io
import os
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterable, Iterator

from .download_store import DownloadStore
from .errors import NotFoundError, StoreCorruptionError
from .storage.base import RecordKind
from .storage.shard_store import ShardStore

__all__ = ["DumpEntry", "dump", "dump_store", "summarize", "PREVIEW_LIMIT"]

PREVIEW_LIMIT = 128


@dataclass(frozen=True)
class DumpEntry:
    """One key of one store with a bounded preview of its value."""
    kind: RecordKind
    path: str
    key: str
    size: int
    preview: str


def _stream_size(rs: BinaryIO) -> int:
    if isinstance(rs, io.BytesIO):
        return len(rs.getbuffer())
    return os.fstat(rs.fileno()).st_size


def dump_store(store: ShardStore, kind: RecordKind, *, hex: bool = False, limit: int = PREVIEW_LIMIT) -> Iterator[DumpEntry]:
    """Yield a DumpEntry for every key in one shard store."""
    for key in store.keys():
        try:
            with store.read_stream(key) as rs:
                head = rs.read(limit)
                size = _stream_size(rs)
        except NotFoundError as e:
            raise StoreCorruptionError(f"key {key} in {store.base_path} had no value") from e
        yield DumpEntry(
            kind=kind,
            path=f"{store.base_path}/{key}",
            key=key,
            size=size,
            preview=head.hex() if hex else head.decode("utf-8", errors="replace"),
        )


def dump(ds: DownloadStore, *, hex: bool = False, limit: int = PREVIEW_LIMIT) -> Iterator[DumpEntry]:
    """
    Yield a preview of every value in every store of the bundle.

    Stores are walked in RecordKind order (remote, object, download).

    Args:
        ds: Store bundle to inspect
        hex: Render previews as hex instead of text
        limit: Maximum number of value bytes per preview

    Raises:
        StoreCorruptionError: If a listed key has no readable value
    """
    if limit < 0:
        raise ValueError(f"limit must be non-negative, got {limit}")
    for kind, store in ds.stores().items():
        yield from dump_store(store, kind, hex=hex, limit=limit)


def summarize(entries: Iterable[DumpEntry]) -> Dict[RecordKind, int]:
    """Count entries per store; every kind is present, possibly with zero."""
    counts = {kind: 0 for kind in RecordKind}
    for entry in entries:
        counts[entry.kind] += 1
    return counts
