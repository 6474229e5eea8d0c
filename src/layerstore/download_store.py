"""
Store bundle holding the remote, object and download shard stores.

A DownloadStore is an explicit value: open one per base directory and pass it
to every lookup and fetch. Several independent bundles may coexist (one per
test, for instance).
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, TypeVar

from .errors import NotFoundError, StoreClosedError
from .locking import KeyedLock
from .remote import Remote
from .settings import Settings
from .storage.base import Record, RecordKind
from .storage.shard_store import (
    CHUNK_SIZE,
    DEFAULT_CACHE_SIZE_MAX,
    ShardStore,
    TransformFunction,
    block_transform,
)

__all__ = ["DownloadStore"]

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)


class DownloadStore:
    """
    Bundle of one ShardStore per RecordKind under a common base directory.

    Layout: ``{base_dir}/{kind.value}/...`` for every RecordKind. Typed
    records are routed by their ``kind``; adding a kind adds a store here
    without any change to store()/get().
    """

    def __init__(
        self,
        base_dir: Path | str,
        *,
        cache_size_max: int = DEFAULT_CACHE_SIZE_MAX,
        chunk_size: int = CHUNK_SIZE,
        transform: TransformFunction = block_transform,
    ) -> None:
        self.base_dir = Path(base_dir)
        self._stores: Dict[RecordKind, ShardStore] = {
            kind: ShardStore(
                self.base_dir / kind.value,
                transform=transform,
                cache_size_max=cache_size_max,
                chunk_size=chunk_size,
            )
            for kind in RecordKind
        }
        self.locks = KeyedLock()
        self._closed = False
        logger.debug(f"Opened download store at {self.base_dir}")

    @classmethod
    def open(cls, settings: Settings) -> DownloadStore:
        """Open the store bundle described by settings."""
        return cls(
            settings.base_dir,
            cache_size_max=settings.cache_size_max,
            chunk_size=settings.chunk_size,
        )

    def close(self) -> None:
        """Drop cached values; further use raises StoreClosedError."""
        if self._closed:
            return
        for store in self._stores.values():
            store.clear_cache()
        self._closed = True
        logger.debug(f"Closed download store at {self.base_dir}")

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"DownloadStore({str(self.base_dir)!r})"

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def store_for(self, kind: RecordKind) -> ShardStore:
        """Return the shard store backing ``kind``."""
        if self._closed:
            raise StoreClosedError(f"{self} is closed")
        return self._stores[RecordKind(kind)]

    def stores(self) -> Dict[RecordKind, ShardStore]:
        """All shard stores, in RecordKind order."""
        if self._closed:
            raise StoreClosedError(f"{self} is closed")
        return dict(self._stores)

    def store(self, record: Record) -> None:
        """Persist ``record`` under its identity key, overwriting any previous value."""
        self.store_for(record.kind).write(record.key(), record.marshal())

    def get(self, record: R) -> R:
        """
        Load the stored version of ``record``.

        Only the store is consulted; this never performs network I/O.

        Returns:
            A new record decoded from the stored bytes

        Raises:
            NotFoundError: If no record is stored under the record's key
            DecodeError: If the stored bytes do not decode
        """
        data = self.store_for(record.kind).read(record.key())
        return record.unmarshal(data)

    def lookup(self, remote: Remote) -> Optional[Remote]:
        """Return the stored Remote, or None on a cache miss."""
        try:
            return self.get(remote)
        except NotFoundError:
            return None

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def object_stream(self, content_hash: str) -> BinaryIO:
        """
        Open the payload stored under ``content_hash``.

        Raises:
            NotFoundError: If no such object exists
        """
        return self.store_for(RecordKind.OBJECT).read_stream(content_hash)

    def has_object(self, content_hash: str) -> bool:
        return self.store_for(RecordKind.OBJECT).has(content_hash)

    # ------------------------------------------------------------------
    # Landing entries
    # ------------------------------------------------------------------

    def stale_downloads(self) -> List[str]:
        """
        List landing entries not owned by an in-flight fetch.

        These are left behind when a process dies mid-fetch.
        """
        landing = self.store_for(RecordKind.DOWNLOAD)
        return sorted(k for k in landing.keys() if not self.locks.locked(k))

    def prune_downloads(self) -> List[str]:
        """
        Erase landing entries left behind by aborted fetches.

        Each key's fetch lock is held while erasing, so an in-flight fetch in
        this process is never disturbed. Only run on operator request.

        Returns:
            Keys that were erased
        """
        landing = self.store_for(RecordKind.DOWNLOAD)
        erased = []
        for key in list(landing.keys()):
            with self.locks.hold(key):
                if landing.has(key):
                    landing.erase(key)
                    erased.append(key)
                    logger.info(f"Erased stale download {key}")
        return sorted(erased)
