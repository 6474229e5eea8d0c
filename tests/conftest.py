"""Root pytest configuration for layerstore tests."""
import pytest

from layerstore.download_store import DownloadStore
from layerstore.fetch import Fetcher
from layerstore.settings import Settings

from tests.fakes.fake_http import FakeHTTPServer


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (may take significant time)"
    )


# Keep every test away from the real cache directory
@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path):
    """Automatically set up test environment variables."""
    monkeypatch.setenv("LAYERSTORE_DIR", str(tmp_path / "env-store"))
    for var in ("LAYERSTORE_CACHE_SIZE_MAX", "LAYERSTORE_CHUNK_SIZE", "LAYERSTORE_HTTP_TIMEOUT",
                "LAYERSTORE_HTTP_RETRY", "LAYERSTORE_INSECURE"):
        monkeypatch.delenv(var, raising=False)


# Standardized test fixtures
@pytest.fixture
def settings(tmp_path):
    """Standard test settings with small chunks so streams span many chunks."""
    return Settings(
        base_dir=tmp_path / "store",
        cache_size_max=4096,
        chunk_size=4,
    )


@pytest.fixture
def store(settings):
    """Store bundle rooted in the test's temp directory."""
    ds = DownloadStore.open(settings)
    yield ds
    ds.close()


@pytest.fixture
def server():
    """Fake HTTP origin."""
    return FakeHTTPServer()


@pytest.fixture
def fetcher(settings, server):
    """Fetcher wired to the fake HTTP origin."""
    client = server.client()
    yield Fetcher(settings, client=client)
    client.close()
