"""
CLI Context for managing application dependencies.

Provides a clean way to manage CLI-level dependencies like settings, the
store bundle and the fetcher, avoiding global state and enabling proper
dependency injection.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from .download_store import DownloadStore
from .fetch import Fetcher
from .settings import Settings, create_settings_from_env


@dataclass
class CLIContext:
    """
    Shared context for CLI commands.

    Manages application-level dependencies that are initialized once and
    shared across a CLI command execution. Tests build one directly with an
    httpx client backed by a mock transport.
    """
    settings: Settings
    http_client: Optional[httpx.Client] = None
    _store: Optional[DownloadStore] = None
    _fetcher: Optional[Fetcher] = None

    @classmethod
    def from_env(cls) -> CLIContext:
        """
        Create CLI context from environment variables.

        Returns:
            CLIContext with settings loaded from environment
        """
        return cls(settings=create_settings_from_env())

    @property
    def store(self) -> DownloadStore:
        """Get or open the store bundle (lazy initialization)."""
        if self._store is None:
            self._store = DownloadStore.open(self.settings)
        return self._store

    @property
    def fetcher(self) -> Fetcher:
        """Get or create the fetcher (lazy initialization)."""
        if self._fetcher is None:
            self._fetcher = Fetcher(self.settings, client=self.http_client)
        return self._fetcher

    def close(self) -> None:
        """Release the fetcher's HTTP client and the store bundle."""
        if self._fetcher is not None:
            self._fetcher.close()
            self._fetcher = None
        if self._store is not None:
            self._store.close()
            self._store = None
