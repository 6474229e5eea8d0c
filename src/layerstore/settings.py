"""
Settings and configuration for the layer store.

Centralizes configuration values and provides validation with fail-fast behavior.
Loads settings from environment variables at construction time.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

__all__ = ["Settings", "create_settings_from_env", "DEFAULT_BASE_DIR"]

DEFAULT_BASE_DIR = Path.home() / ".cache" / "layerstore"
DEFAULT_CACHE_SIZE_MAX = 1024 * 1024  # 1 MiB
DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1 MiB


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for the layer store.

    Store Settings:
        base_dir: Directory holding the remote, object and download stores
        cache_size_max: In-memory read cache budget per shard store, in bytes
        chunk_size: Streaming chunk size for disk copies

    HTTP Settings:
        http_timeout_s: HTTP timeout in seconds (connect and read)
        http_retry: Number of connection retries (0=no retry)
        insecure: Skip TLS certificate verification
    """
    base_dir: Path = DEFAULT_BASE_DIR
    cache_size_max: int = DEFAULT_CACHE_SIZE_MAX
    chunk_size: int = DEFAULT_CHUNK_SIZE
    http_timeout_s: float = 30.0
    http_retry: int = 0
    insecure: bool = False

    def __post_init__(self):
        """Validate settings on construction."""
        if not self.base_dir or not str(self.base_dir).strip():
            raise ValueError("base_dir is required")

        # Normalize str paths so callers may pass either
        if not isinstance(self.base_dir, Path):
            object.__setattr__(self, "base_dir", Path(self.base_dir))

        if self.cache_size_max < 0:
            raise ValueError(f"cache_size_max must be non-negative, got {self.cache_size_max}")

        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")

        if self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")

        if self.http_retry < 0:
            raise ValueError(f"http_retry must be non-negative, got {self.http_retry}")


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        - LAYERSTORE_DIR (default: ~/.cache/layerstore)
        - LAYERSTORE_CACHE_SIZE_MAX (default: 1048576)
        - LAYERSTORE_CHUNK_SIZE (default: 1048576)
        - LAYERSTORE_HTTP_TIMEOUT (default: 30.0)
        - LAYERSTORE_HTTP_RETRY (default: 0)
        - LAYERSTORE_INSECURE (default: false)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Creates a fresh Settings instance every time (no caching).
        This keeps tests isolated and avoids global state.
    """
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        return float(value) if value else default

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        return int(value) if value else default

    base_dir = os.getenv("LAYERSTORE_DIR")

    return Settings(
        base_dir=Path(base_dir).expanduser() if base_dir else DEFAULT_BASE_DIR,
        cache_size_max=get_int("LAYERSTORE_CACHE_SIZE_MAX", DEFAULT_CACHE_SIZE_MAX),
        chunk_size=get_int("LAYERSTORE_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        http_timeout_s=get_float("LAYERSTORE_HTTP_TIMEOUT", 30.0),
        http_retry=get_int("LAYERSTORE_HTTP_RETRY", 0),
        insecure=str_to_bool(os.getenv("LAYERSTORE_INSECURE", "false")),
    )
