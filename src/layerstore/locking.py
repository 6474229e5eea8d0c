"""
Per-key mutual exclusion.

KeyedLock hands out one lock per key so that work on the same key is
serialized while work on different keys proceeds in parallel. Entries are
dropped as soon as no thread holds or waits on them, so the table stays
as small as the number of keys in flight.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

__all__ = ["KeyedLock"]


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLock:
    """In-process lock table keyed by string."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Args:
            key: Lock key
            timeout: Seconds to wait before giving up (None waits forever)

        Raises:
            TimeoutError: If the lock could not be acquired in time
        """
        with self._mutex:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1

        acquired = False
        try:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                raise TimeoutError(f"timed out waiting for lock on {key}")
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._mutex:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def locked(self, key: str) -> bool:
        """Check if some thread currently holds ``key``."""
        with self._mutex:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    def active_keys(self) -> List[str]:
        with self._mutex:
            return list(self._entries)
