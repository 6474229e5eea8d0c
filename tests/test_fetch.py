"""
Tests for the fetch pipeline.

Runs Fetcher against an in-memory HTTP origin and checks what ends up in
the remote, object and download stores.
"""
from __future__ import annotations

import hashlib
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest
from tenacity import wait_none

from layerstore.errors import FetchCancelled, NetworkError, NotFoundError, StoreClosedError, StoreIOError
from layerstore.fetch import FanOutWriter, Fetcher
from layerstore.remote import Remote
from layerstore.settings import Settings
from layerstore.storage.base import RecordKind
from tests.fakes import StallingStream


URL_A = "http://x/a.tar"
URL_B = "http://y/b.tar"
HELLO_HASH = hashlib.sha256(b"hello").hexdigest()


def chunked(chunks, length=None):
    """Handler answering with a body delivered in the given chunks."""
    headers = {"Content-Length": str(length)} if length is not None else None

    def handler(request):
        return httpx.Response(200, content=iter(chunks), headers=headers)

    return handler


def keys_of(store, kind):
    return sorted(store.store_for(kind).keys())


class RecordingSink:
    def __init__(self):
        self.chunks = []

    def write(self, chunk):
        self.chunks.append(chunk)
        return len(chunk)


class FailingSink:
    def __init__(self, exc):
        self.exc = exc

    def write(self, chunk):
        raise self.exc


class TestScenarios:
    """End-to-end behaviour of the store triad."""

    def test_scenario_a_single_fetch(self, store, fetcher, server):
        """Body is stored under its content hash and the remote points at it."""
        server.serve(URL_A, b"hello")

        updated = fetcher.download(store, Remote.new(URL_A))

        assert updated.file == HELLO_HASH
        assert keys_of(store, RecordKind.OBJECT) == [HELLO_HASH]
        assert store.get(Remote.new(URL_A)).file == HELLO_HASH
        with store.object_stream(HELLO_HASH) as rs:
            assert rs.read() == b"hello"

    def test_scenario_b_identical_content_deduplicated(self, store, fetcher, server):
        """Two names with the same body share one object."""
        server.serve(URL_A, b"hello")
        server.serve(URL_B, b"hello")

        a = fetcher.download(store, Remote.new(URL_A))
        b = fetcher.download(store, Remote.new(URL_B))

        assert keys_of(store, RecordKind.OBJECT) == [HELLO_HASH]
        assert len(keys_of(store, RecordKind.REMOTE)) == 2
        assert a.file == b.file == HELLO_HASH

    def test_scenario_c_get_never_seen(self, store, server):
        """A never fetched name is a miss and the caller's record stays unresolved."""
        remote = Remote.new("http://x/never.tar")

        with pytest.raises(NotFoundError):
            store.get(remote)

        assert remote.file == ""
        assert server.call_count() == 0

    def test_scenario_d_stream_failure(self, store, fetcher, server):
        """A body that breaks mid-stream leaves no resolved record behind."""
        server.serve_failing(URL_A, [b"hel"])

        with pytest.raises(NetworkError):
            fetcher.download(store, Remote.new(URL_A))

        stored = store.lookup(Remote.new(URL_A))
        assert stored is None or stored.file == ""
        assert keys_of(store, RecordKind.OBJECT) == []
        assert keys_of(store, RecordKind.DOWNLOAD) == []


class TestDownload:
    """Test Fetcher.download."""

    def test_idempotent(self, store, fetcher, server):
        """Downloading twice yields one object and one record; both calls hit the network."""
        server.serve(URL_A, b"hello")

        first = fetcher.download(store, Remote.new(URL_A))
        second = fetcher.download(store, Remote.new(URL_A))

        assert first == second
        assert keys_of(store, RecordKind.OBJECT) == [HELLO_HASH]
        assert len(keys_of(store, RecordKind.REMOTE)) == 1
        assert server.call_count(URL_A) == 2

    def test_landing_entry_erased_after_success(self, store, fetcher, server):
        server.serve(URL_A, b"hello")
        fetcher.download(store, Remote.new(URL_A))
        assert keys_of(store, RecordKind.DOWNLOAD) == []

    def test_large_body_spans_many_chunks(self, store, fetcher, server):
        body = bytes(range(256)) * 64
        server.serve(URL_A, body)

        updated = fetcher.download(store, Remote.new(URL_A))

        assert updated.file == hashlib.sha256(body).hexdigest()
        with store.object_stream(updated.file) as rs:
            assert rs.read() == body

    def test_empty_body(self, store, fetcher, server):
        server.serve(URL_A, b"")
        updated = fetcher.download(store, Remote.new(URL_A))
        assert updated.file == hashlib.sha256(b"").hexdigest()
        assert store.has_object(updated.file)

    def test_changed_content_adds_object(self, store, fetcher, server):
        """A new body for the same name re-points the record; the old object stays."""
        server.serve(URL_A, b"hello")
        fetcher.download(store, Remote.new(URL_A))
        server.serve(URL_A, b"goodbye")

        updated = fetcher.download(store, Remote.new(URL_A))

        assert updated.file == hashlib.sha256(b"goodbye").hexdigest()
        assert sorted([HELLO_HASH, updated.file]) == keys_of(store, RecordKind.OBJECT)
        assert store.get(Remote.new(URL_A)).file == updated.file

    def test_preserves_other_fields(self, store, fetcher, server):
        server.serve("http://mirror/a.tar", b"hello")
        remote = Remote(name=URL_A, mirrors=["http://mirror/a.tar"], etag='"abc"')

        updated = fetcher.download(store, remote)

        assert updated.name == URL_A
        assert updated.mirrors == ["http://mirror/a.tar"]
        assert updated.etag == '"abc"'
        assert remote.file == ""

    def test_only_first_mirror_requested(self, store, fetcher, server):
        """There is no failover: a failing first mirror fails the fetch."""
        server.serve("http://m2/a.tar", b"hello")
        remote = Remote(name=URL_A, mirrors=["http://m1/a.tar", "http://m2/a.tar"])

        with pytest.raises(NetworkError) as exc_info:
            fetcher.download(store, remote)

        assert exc_info.value.status == 404
        assert exc_info.value.url == "http://m1/a.tar"
        assert server.call_count("http://m2/a.tar") == 0

    @pytest.mark.parametrize("status", [204, 301, 404, 500, 503])
    def test_non_200_status_is_network_error(self, store, fetcher, server, status):
        server.serve(URL_A, b"nope", status=status)

        with pytest.raises(NetworkError) as exc_info:
            fetcher.download(store, Remote.new(URL_A))

        assert exc_info.value.status == status
        assert "only 200 OK is accepted" in str(exc_info.value)
        assert keys_of(store, RecordKind.OBJECT) == []

    def test_failed_fetch_leaves_unresolved_record(self, store, fetcher, server):
        """The record is inserted before the GET and stays unresolved on failure."""
        server.serve(URL_A, b"", status=500)

        with pytest.raises(NetworkError):
            fetcher.download(store, Remote.new(URL_A))

        stored = store.get(Remote.new(URL_A))
        assert stored.name == URL_A
        assert stored.file == ""

    def test_failed_refetch_keeps_previous_resolution(self, store, fetcher, server):
        server.serve(URL_A, b"hello")
        fetcher.download(store, Remote.new(URL_A))
        server.serve(URL_A, b"", status=500)

        with pytest.raises(NetworkError):
            fetcher.download(store, Remote.new(URL_A))

        assert store.get(Remote.new(URL_A)).file == HELLO_HASH

    def test_record_inserted_and_lock_held_during_request(self, store, fetcher, server):
        remote = Remote.new(URL_A)
        seen = {}

        def handler(request):
            seen["locked"] = store.locks.locked(remote.key())
            seen["record"] = store.lookup(remote)
            return httpx.Response(200, content=b"hello")

        server.serve_handler(URL_A, handler)
        fetcher.download(store, remote)

        assert seen["locked"] is True
        assert seen["record"] is not None
        assert seen["record"].file == ""
        assert not store.locks.locked(remote.key())

    def test_closed_store_rejected(self, store, fetcher, server):
        server.serve(URL_A, b"hello")
        store.close()

        with pytest.raises(StoreClosedError):
            fetcher.download(store, Remote.new(URL_A))
        assert server.call_count() == 0

    def test_landing_write_failure_is_store_error(self, store, fetcher, server, monkeypatch):
        def broken_write(self, chunk):
            raise StoreIOError("disk full")

        def handler(request):
            # Break the disk only after the initial record insert
            monkeypatch.setattr("layerstore.storage.shard_store.ShardWriter.write", broken_write)
            return httpx.Response(200, content=b"hello world")

        server.serve_handler(URL_A, handler)

        with pytest.raises(StoreIOError, match="disk full"):
            fetcher.download(store, Remote.new(URL_A))

        assert store.get(Remote.new(URL_A)).file == ""
        assert keys_of(store, RecordKind.DOWNLOAD) == []


class TestNetworkFailures:
    """Test transport errors and the opt-in connect retry."""

    @staticmethod
    def flaky_handler(failures):
        attempts = {"n": 0}

        def handler(request):
            attempts["n"] += 1
            if attempts["n"] <= failures:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, content=b"hello")

        return handler

    def test_connect_error_not_retried_by_default(self, store, fetcher, server):
        server.serve_handler(URL_A, self.flaky_handler(failures=1))

        with pytest.raises(NetworkError) as exc_info:
            fetcher.download(store, Remote.new(URL_A))

        assert exc_info.value.status is None
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert server.call_count(URL_A) == 1

    def test_connect_error_retried_when_enabled(self, tmp_path, store, server, monkeypatch):
        monkeypatch.setattr(Fetcher, "retry_wait", wait_none())
        settings = Settings(base_dir=tmp_path / "store", chunk_size=4, http_retry=2)
        server.serve_handler(URL_A, self.flaky_handler(failures=2))

        with Fetcher(settings, client=server.client()) as fetcher:
            updated = fetcher.download(store, Remote.new(URL_A))

        assert updated.file == HELLO_HASH
        assert server.call_count(URL_A) == 3

    def test_retry_budget_exhausted(self, tmp_path, store, server, monkeypatch):
        monkeypatch.setattr(Fetcher, "retry_wait", wait_none())
        settings = Settings(base_dir=tmp_path / "store", http_retry=1)
        server.serve_handler(URL_A, self.flaky_handler(failures=5))

        with Fetcher(settings, client=server.client()) as fetcher:
            with pytest.raises(NetworkError):
                fetcher.download(store, Remote.new(URL_A))

        assert server.call_count(URL_A) == 2

    def test_status_errors_never_retried(self, tmp_path, store, server, monkeypatch):
        monkeypatch.setattr(Fetcher, "retry_wait", wait_none())
        settings = Settings(base_dir=tmp_path / "store", http_retry=3)
        server.serve(URL_A, b"", status=503)

        with Fetcher(settings, client=server.client()) as fetcher:
            with pytest.raises(NetworkError):
                fetcher.download(store, Remote.new(URL_A))

        assert server.call_count(URL_A) == 1

    def test_mid_stream_failure_never_retried(self, tmp_path, store, server, monkeypatch):
        monkeypatch.setattr(Fetcher, "retry_wait", wait_none())
        settings = Settings(base_dir=tmp_path / "store", http_retry=3)
        server.serve_failing(URL_A, [b"partial"])

        with Fetcher(settings, client=server.client()) as fetcher:
            with pytest.raises(NetworkError):
                fetcher.download(store, Remote.new(URL_A))

        assert server.call_count(URL_A) == 1


class TestCancellationAndOptions:
    """Test cancellation, per-call timeouts and progress reporting."""

    def test_cancel_before_request(self, store, fetcher, server):
        server.serve(URL_A, b"hello")
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(FetchCancelled):
            fetcher.download(store, Remote.new(URL_A), cancel=cancel)

        assert server.call_count() == 0
        assert store.get(Remote.new(URL_A)).file == ""

    def test_cancel_mid_stream(self, store, fetcher, server):
        server.serve_handler(URL_A, chunked([b"hello", b" world", b", more", b" chunks"]))
        cancel = threading.Event()

        def progress(done, total):
            cancel.set()

        with pytest.raises(FetchCancelled) as exc_info:
            fetcher.download(store, Remote.new(URL_A), cancel=cancel, progress=progress)

        # Cancellation is a kind of network failure
        assert isinstance(exc_info.value, NetworkError)
        assert keys_of(store, RecordKind.OBJECT) == []
        assert keys_of(store, RecordKind.DOWNLOAD) == []

    def test_cancel_interrupts_stalled_read(self, tmp_path, store, server):
        """A read stuck waiting on the network does not delay cancellation."""
        stream = StallingStream(b"x" * 10, b"y" * 10)
        server.serve_handler(URL_A, lambda request: httpx.Response(200, stream=stream))
        # Default settings: a large chunk size must not hold data back
        settings = Settings(base_dir=tmp_path / "store")
        client = server.client()
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)

        try:
            with Fetcher(settings, client=client) as fetcher:
                timer.start()
                started = time.monotonic()
                with pytest.raises(FetchCancelled):
                    fetcher.download(store, Remote.new(URL_A), cancel=cancel)
                elapsed = time.monotonic() - started
        finally:
            stream.release.set()
            timer.cancel()
            client.close()

        assert elapsed < 1.0
        assert keys_of(store, RecordKind.OBJECT) == []
        assert keys_of(store, RecordKind.DOWNLOAD) == []
        assert store.get(Remote.new(URL_A)).file == ""

    def test_cancellable_fetch_completes_when_not_cancelled(self, store, fetcher, server):
        body = bytes(range(256)) * 16
        server.serve_handler(URL_A, chunked([body[i:i + 100] for i in range(0, len(body), 100)]))

        updated = fetcher.download(store, Remote.new(URL_A), cancel=threading.Event())

        assert updated.file == hashlib.sha256(body).hexdigest()
        with store.object_stream(updated.file) as rs:
            assert rs.read() == body

    def test_cancellable_fetch_reports_stream_failure(self, store, fetcher, server):
        server.serve_failing(URL_A, [b"hel", b"lo"])

        with pytest.raises(NetworkError) as exc_info:
            fetcher.download(store, Remote.new(URL_A), cancel=threading.Event())

        assert not isinstance(exc_info.value, FetchCancelled)
        assert isinstance(exc_info.value.__cause__, httpx.ReadError)
        assert keys_of(store, RecordKind.DOWNLOAD) == []

    def test_per_call_timeout_applied(self, store, fetcher, server):
        seen = {}

        def handler(request):
            seen.update(request.extensions["timeout"])
            return httpx.Response(200, content=b"hello")

        server.serve_handler(URL_A, handler)
        fetcher.download(store, Remote.new(URL_A), timeout=2.5)

        assert seen["read"] == 2.5
        assert seen["connect"] == 2.5

    def test_progress_reports_running_total(self, store, fetcher, server):
        body = b"0123456789"
        server.serve_handler(URL_A, chunked([b"0123", b"4567", b"89"], length=len(body)))
        reports = []

        fetcher.download(store, Remote.new(URL_A), progress=lambda done, total: reports.append((done, total)))

        assert reports[-1] == (len(body), len(body))
        assert [done for done, _ in reports] == sorted(done for done, _ in reports)
        # One report per chunk as the transport delivers it
        assert reports == [(4, 10), (8, 10), (10, 10)]


class TestResolve:
    """Test Fetcher.resolve cache hits and misses."""

    def test_miss_then_hit(self, store, fetcher, server):
        server.serve(URL_A, b"hello")

        first, cached_first = fetcher.resolve(store, Remote.new(URL_A))
        second, cached_second = fetcher.resolve(store, Remote.new(URL_A))

        assert (cached_first, cached_second) == (False, True)
        assert first == second
        assert server.call_count(URL_A) == 1

    def test_unresolved_record_is_a_miss(self, store, fetcher, server):
        server.serve(URL_A, b"", status=500)
        with pytest.raises(NetworkError):
            fetcher.resolve(store, Remote.new(URL_A))

        server.serve(URL_A, b"hello")
        resolved, cached = fetcher.resolve(store, Remote.new(URL_A))

        assert cached is False
        assert resolved.file == HELLO_HASH

    def test_missing_object_refetched(self, store, fetcher, server, caplog):
        server.serve(URL_A, b"hello")
        fetcher.resolve(store, Remote.new(URL_A))
        store.store_for(RecordKind.OBJECT).erase(HELLO_HASH)

        with caplog.at_level(logging.WARNING, logger="layerstore.fetch"):
            resolved, cached = fetcher.resolve(store, Remote.new(URL_A))

        assert cached is False
        assert store.has_object(resolved.file)
        assert server.call_count(URL_A) == 2
        assert "missing object" in caplog.text

    def test_refetch_uses_stored_mirrors(self, store, fetcher, server):
        server.serve("http://mirror/a.tar", b"hello")
        fetcher.download(store, Remote(name=URL_A, mirrors=["http://mirror/a.tar"]))
        store.store_for(RecordKind.OBJECT).erase(HELLO_HASH)

        resolved, cached = fetcher.resolve(store, Remote.new(URL_A))

        assert cached is False
        assert resolved.mirrors == ["http://mirror/a.tar"]
        assert server.call_count(URL_A) == 0


class TestConcurrency:
    """Test per-key serialization of fetches."""

    def test_concurrent_resolves_fetch_once(self, store, fetcher, server):
        def slow(request):
            time.sleep(0.1)
            return httpx.Response(200, content=b"hello")

        server.serve_handler(URL_A, slow)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: fetcher.resolve(store, Remote.new(URL_A)), range(4)))

        assert server.call_count(URL_A) == 1
        assert sorted(cached for _, cached in results) == [False, True, True, True]
        assert {r.file for r, _ in results} == {HELLO_HASH}
        assert store.locks.active_keys() == []

    def test_different_keys_fetch_in_parallel(self, store, fetcher, server):
        """Both requests must be in flight at once to pass the barrier."""
        barrier = threading.Barrier(2, timeout=5)

        def handler(request):
            barrier.wait()
            return httpx.Response(200, content=str(request.url).encode())

        server.serve_handler(URL_A, handler)
        server.serve_handler(URL_B, handler)

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(fetcher.download, store, Remote.new(u)) for u in (URL_A, URL_B)]
            results = [f.result() for f in futures]

        assert len({r.file for r in results}) == 2
        assert len(keys_of(store, RecordKind.OBJECT)) == 2


class TestFanOutWriter:
    """Test the chunk fan-out used to hash and land in one pass."""

    def test_every_sink_sees_every_chunk(self):
        a, b = RecordingSink(), RecordingSink()
        tee = FanOutWriter(a, b)

        tee.write(b"ab")
        tee.write(b"cd")

        assert a.chunks == b.chunks == [b"ab", b"cd"]
        assert tee.bytes_written == 4

    def test_first_failure_raised_others_logged(self, caplog):
        ok = RecordingSink()
        tee = FanOutWriter(FailingSink(OSError("first")), ok, FailingSink(ValueError("second")))

        with caplog.at_level(logging.ERROR, logger="layerstore.fetch"):
            with pytest.raises(OSError, match="first"):
                tee.write(b"chunk")

        # The healthy sink still received the chunk
        assert ok.chunks == [b"chunk"]
        assert "second" in caplog.text
        assert tee.bytes_written == 0


class TestClientOwnership:
    """Test that Fetcher only closes clients it created."""

    def test_owned_client_closed(self, settings):
        fetcher = Fetcher(settings)
        fetcher.close()
        assert fetcher.client.is_closed

    def test_injected_client_left_open(self, settings, server):
        client = server.client()
        with Fetcher(settings, client=client):
            pass
        assert not client.is_closed
        client.close()
