"""
Operations Facade - Application service layer.

Provides a clean interface between the CLI and the store/fetch APIs,
centralizing command orchestration and configuration while keeping CLI
commands thin and testable.
"""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Optional

from ..download_store import DownloadStore
from ..fetch import Fetcher, ProgressCallback
from ..inspection import DumpEntry, PREVIEW_LIMIT, dump
from ..remote import Remote


@dataclass(frozen=True)
class OpsConfig:
    """
    Configuration for Operations facade.

    Centralizes policy decisions like progress display and output detail
    to avoid scattered configuration.
    """
    ci: bool = False              # Running in CI environment (no progress bar)
    verbose: bool = False         # Show detailed output
    force: bool = False           # Fetch even when the remote is cached


@dataclass(frozen=True)
class FetchResult:
    """Outcome of a fetch: the resolved remote and whether it was a cache hit."""
    remote: Remote
    cached: bool


class Operations:
    """
    Application service facade for CLI operations.

    One method per CLI verb. The facade holds no state beyond the injected
    config, store bundle and fetcher; exceptions bubble up for central
    mapping to exit codes.
    """

    def __init__(self, config: OpsConfig, store: DownloadStore, fetcher: Optional[Fetcher] = None):
        """
        Initialize Operations facade.

        Args:
            config: Configuration settings
            store: Store bundle to operate on
            fetcher: Fetch pipeline (None for store-only commands)
        """
        self.cfg = config
        self.store = store
        self.fetcher = fetcher

    def get(self, name: str) -> Remote:
        """
        Look up a cached remote by name without touching the network.

        Raises:
            NotFoundError: If the remote has never been fetched
        """
        return self.store.get(Remote.new(name))

    def fetch(self, name: str, *, progress: Optional[ProgressCallback] = None) -> FetchResult:
        """Resolve a remote by name, downloading it on a cache miss (or always with force)."""
        if self.fetcher is None:
            raise ValueError("fetch requires a fetcher")
        remote = Remote.new(name)
        if self.cfg.force:
            return FetchResult(self.fetcher.download(self.store, remote, progress=progress), cached=False)
        resolved, cached = self.fetcher.resolve(self.store, remote, progress=progress)
        return FetchResult(resolved, cached)

    def cat(self, content_hash: str, out: BinaryIO) -> None:
        """Copy an object's payload to ``out``."""
        with self.store.object_stream(content_hash) as rs:
            shutil.copyfileobj(rs, out)

    def dump(self, *, hex: bool = False, limit: int = PREVIEW_LIMIT) -> Iterator[DumpEntry]:
        """Preview every value in every store."""
        return dump(self.store, hex=hex, limit=limit)

    def gc(self, *, dry_run: bool = False) -> List[str]:
        """List (dry run) or erase landing entries left by aborted fetches."""
        if dry_run:
            return self.store.stale_downloads()
        return self.store.prune_downloads()
