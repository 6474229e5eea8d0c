"""
Sharded on-disk key/value store.

A ShardStore keeps one file per key below ``base_path``, fanned out into
shard directories by a transform function, plus a bounded in-memory read
cache. Every write lands in a temp file that is fsynced and renamed into
place, so readers see either the previous value or the complete new one.
"""
from __future__ import annotations

import hashlib
import io
import logging
import os
import shutil
import tempfile
import threading
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Optional

from ..errors import DigestMismatch, NotFoundError, StoreIOError
from .base import ByteStream

__all__ = ["ShardStore", "ShardWriter", "block_transform", "TransformFunction"]

logger = logging.getLogger(__name__)

TransformFunction = Callable[[str], List[str]]

CHUNK_SIZE = 1024 * 1024  # 1 MiB
DEFAULT_CACHE_SIZE_MAX = 1024 * 1024  # 1 MiB
TMP_DIRNAME = ".tmp"
TMP_PREFIX = ".ls.tmp."


def block_transform(key: str) -> List[str]:
    """
    Map a key to its shard directory.

    Copies git's default of a two character prefix, which bounds each store
    to 256 shard directories for hex keys.
    """
    return [key[0:2]]


def _iter_chunks(reader: ByteStream, chunk_size: int) -> Iterator[bytes]:
    """Yield chunks from a file-like object with read() or an iterable of bytes."""
    if hasattr(reader, "read"):
        while True:
            chunk = reader.read(chunk_size)
            if not chunk:
                break
            yield chunk
    else:
        for chunk in reader:
            if chunk:
                yield chunk


class ShardWriter:
    """
    Writable sink handed out by ShardStore.writer().

    Wraps the temp file so device errors surface as StoreIOError, and hashes
    the data when the caller asked for digest verification.
    """

    def __init__(self, fileobj: BinaryIO, key: str, verify: bool) -> None:
        self._file = fileobj
        self.key = key
        self.bytes_written = 0
        self.committed = False
        self._hash = hashlib.sha256() if verify else None

    def write(self, chunk: bytes) -> int:
        try:
            n = self._file.write(chunk)
        except OSError as e:
            raise StoreIOError(f"error writing {self.key}: {e}") from e
        if self._hash is not None:
            self._hash.update(chunk)
        self.bytes_written += len(chunk)
        return n

    def hexdigest(self) -> Optional[str]:
        return self._hash.hexdigest() if self._hash is not None else None


class ShardStore:
    """
    Durable string-keyed byte store with directory sharding.

    Layout: ``{base_path}/{transform(key)...}/{key}``; temp files live in
    ``{base_path}/.tmp`` on the same filesystem so the final rename is atomic.

    Reads of a key return the most recent fully written value or raise
    NotFoundError. The read cache holds at most ``cache_size_max`` bytes and
    evicts least recently used values first; writes and erases invalidate it.
    """

    def __init__(
        self,
        base_path: Path | str,
        *,
        transform: TransformFunction = block_transform,
        cache_size_max: int = DEFAULT_CACHE_SIZE_MAX,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        if cache_size_max < 0:
            raise ValueError(f"cache_size_max must be non-negative, got {cache_size_max}")
        self.base_path = Path(base_path)
        self.transform = transform
        self.cache_size_max = cache_size_max
        self.chunk_size = chunk_size

        self._lock = threading.Lock()
        self._cache: "OrderedDict[str, bytes]" = OrderedDict()
        self._cache_size = 0
        # Bumped on every mutation; a read only caches what it saw if no
        # mutation happened while it was on disk.
        self._generation = 0

    def __repr__(self) -> str:
        return f"ShardStore({str(self.base_path)!r})"

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def tmp_dir(self) -> Path:
        return self.base_path / TMP_DIRNAME

    def path_for(self, key: str) -> Path:
        """Return the file path holding ``key``."""
        self._validate_key(key)
        return self.base_path.joinpath(*self.transform(key), key)

    @staticmethod
    def _validate_key(key: str) -> None:
        if not key:
            raise ValueError("empty key")
        if key.startswith("."):
            raise ValueError(f"key cannot start with '.': {key!r}")
        if "/" in key or "\\" in key or os.sep in key:
            raise ValueError(f"key cannot contain path separators: {key!r}")

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def write(self, key: str, data: bytes) -> None:
        """Create or overwrite ``key`` with ``data``."""
        self.write_stream(key, io.BytesIO(data))

    def write_stream(
        self,
        key: str,
        reader: ByteStream,
        *,
        overwrite: bool = True,
        expected_sha256: Optional[str] = None,
    ) -> bool:
        """
        Stream a value of any size into ``key``.

        Args:
            key: Store key
            reader: Source stream (file-like with read() or iterable of bytes)
            overwrite: Replace an existing value. When False and the key
                exists, the reader is not consumed and nothing is written.
            expected_sha256: If given, the streamed bytes must hash to this
                64-hex digest before the value becomes visible

        Returns:
            True if the value was written, False if an existing value was kept

        Raises:
            StoreIOError: If reading the source or writing the store fails
            DigestMismatch: If the content does not match expected_sha256
        """
        if not overwrite and self.has(key):
            logger.debug(f"{self}: keeping existing value for {key}")
            return False

        with self.writer(key, overwrite=overwrite, expected_sha256=expected_sha256) as sink:
            try:
                for chunk in _iter_chunks(reader, self.chunk_size):
                    sink.write(chunk)
            except StoreIOError:
                raise
            except OSError as e:
                raise StoreIOError(f"error reading stream for {key}: {e}") from e
        return sink.committed

    @contextmanager
    def writer(
        self,
        key: str,
        *,
        overwrite: bool = True,
        expected_sha256: Optional[str] = None,
    ) -> Iterator[ShardWriter]:
        """
        Open an atomic writer for ``key``.

        Data written to the yielded sink becomes visible under ``key`` only
        when the block exits cleanly. If the block raises, the temp file is
        removed and ``key`` keeps its previous value.
        """
        target = self.path_for(key)
        fd, temp_name = self._mkstemp()
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as out:
                sink = ShardWriter(out, key, verify=expected_sha256 is not None)
                yield sink
                try:
                    out.flush()
                    os.fsync(out.fileno())
                except OSError as e:
                    raise StoreIOError(f"error syncing {key}: {e}") from e

            if expected_sha256 is not None:
                actual = sink.hexdigest()
                if actual != expected_sha256:
                    raise DigestMismatch(
                        f"digest mismatch for {key}: expected {expected_sha256}, got {actual}",
                        expected=expected_sha256,
                        actual=actual,
                    )

            sink.committed = self._commit(temp_path, target, overwrite=overwrite)
        finally:
            # After a successful replace the temp name no longer exists
            try:
                temp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"{self}: could not remove temp file {temp_path}: {e}")

        if sink.committed:
            self._invalidate(key)
            logger.debug(f"{self}: wrote {key} ({sink.bytes_written} bytes)")

    def _mkstemp(self) -> tuple[int, str]:
        try:
            self.tmp_dir.mkdir(parents=True, exist_ok=True)
            return tempfile.mkstemp(prefix=TMP_PREFIX, dir=self.tmp_dir)
        except OSError as e:
            raise StoreIOError(f"error creating temp file in {self.tmp_dir}: {e}") from e

    def _commit(self, temp_path: Path, target: Path, *, overwrite: bool) -> bool:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if overwrite:
                os.replace(temp_path, target)
            else:
                # link() refuses to clobber, so a concurrent writer that got
                # there first wins and this value is dropped
                try:
                    os.link(temp_path, target)
                except FileExistsError:
                    logger.debug(f"{self}: {target.name} appeared during write, keeping existing value")
                    return False
            self._fsync_dir(target.parent)
        except OSError as e:
            raise StoreIOError(f"error committing {target.name}: {e}") from e
        return True

    @staticmethod
    def _fsync_dir(path: Path) -> None:
        if not hasattr(os, "O_DIRECTORY"):
            return
        fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def read(self, key: str) -> bytes:
        """
        Return the value stored under ``key``.

        Served from the cache when possible; otherwise read from disk and
        cached if it fits the budget.

        Raises:
            NotFoundError: If the key does not exist
            StoreIOError: If the file cannot be read
        """
        path = self.path_for(key)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return cached
            generation = self._generation

        try:
            data = path.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFoundError(f"key not found: {key}", key=key) from None
        except OSError as e:
            raise StoreIOError(f"error reading {key}: {e}") from e

        self._cache_put(key, data, generation)
        return data

    def read_stream(self, key: str) -> BinaryIO:
        """
        Open ``key`` for streaming reads.

        Cached values come back as an in-memory stream; otherwise the file is
        opened directly and not cached. The caller closes the stream.

        Raises:
            NotFoundError: If the key does not exist
            StoreIOError: If the file cannot be opened
        """
        path = self.path_for(key)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return io.BytesIO(cached)

        try:
            return open(path, "rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFoundError(f"key not found: {key}", key=key) from None
        except OSError as e:
            raise StoreIOError(f"error opening {key}: {e}") from e

    def has(self, key: str) -> bool:
        """Check if ``key`` exists. Never raises for missing keys."""
        path = self.path_for(key)
        with self._lock:
            if key in self._cache:
                return True
        return path.is_file()

    def keys(self) -> Iterator[str]:
        """
        Lazily yield every key in the store, in no particular order.

        Keys written or erased while iterating may or may not be seen.
        """
        if not self.base_path.is_dir():
            return
        for _dirpath, dirnames, filenames in os.walk(self.base_path):
            # Skip the temp area and any other dot directories
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for name in filenames:
                if not name.startswith("."):
                    yield name

    # ------------------------------------------------------------------
    # Erase
    # ------------------------------------------------------------------

    def erase(self, key: str) -> None:
        """
        Remove ``key`` from disk and cache.

        Erasing a key that does not exist is a no-op. Shard directories are
        left in place.
        """
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"{self}: erase of absent key {key}")
        except OSError as e:
            raise StoreIOError(f"error erasing {key}: {e}") from e
        self._invalidate(key)

    def erase_all(self) -> None:
        """Delete every value in the store, on disk and in the cache."""
        try:
            if self.base_path.exists():
                shutil.rmtree(self.base_path)
        except OSError as e:
            raise StoreIOError(f"error erasing {self.base_path}: {e}") from e
        self.clear_cache()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    @property
    def cache_size(self) -> int:
        """Bytes currently held by the read cache."""
        with self._lock:
            return self._cache_size

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
            self._cache_size = 0
            self._generation += 1

    def _invalidate(self, key: str) -> None:
        with self._lock:
            self._generation += 1
            val = self._cache.pop(key, None)
            if val is not None:
                self._cache_size -= len(val)

    def _cache_put(self, key: str, data: bytes, generation: int) -> None:
        size = len(data)
        if size > self.cache_size_max:
            return
        with self._lock:
            if generation != self._generation:
                return
            old = self._cache.pop(key, None)
            if old is not None:
                self._cache_size -= len(old)
            while self._cache and self._cache_size + size > self.cache_size_max:
                _, evicted = self._cache.popitem(last=False)
                self._cache_size -= len(evicted)
            self._cache[key] = data
            self._cache_size += size
