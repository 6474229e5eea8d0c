"""
Fetch pipeline for remote artifacts.

Fetcher.download() retrieves one Remote's payload over HTTP into the
download store while hashing it, promotes the bytes into the object store
under their content hash, and records the name to content mapping in the
remote store. Fetches of the same Remote are serialized through the store
bundle's lock table; fetches of different Remotes run in parallel.
"""
from __future__ import annotations

import hashlib
import logging
import queue
import threading
from typing import Callable, Iterator, Optional, Protocol, Tuple

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .download_store import DownloadStore
from .errors import FetchCancelled, NetworkError
from .remote import Remote
from .settings import Settings
from .storage.base import RecordKind

__all__ = ["Fetcher", "FanOutWriter", "ProgressCallback"]

logger = logging.getLogger(__name__)

USER_AGENT = "layerstore/0.1.0"

# How often a cancellable fetch wakes up to check its cancel event
CANCEL_POLL_S = 0.05
# Chunks buffered between the network reader thread and the disk writer
READER_QUEUE_DEPTH = 8

# Called with (bytes received so far, Content-Length or None)
ProgressCallback = Callable[[int, Optional[int]], None]


class Sink(Protocol):
    def write(self, chunk: bytes) -> object:
        ...


class _HashSink:
    """Adapt a hashlib object to the writer interface."""

    def __init__(self, hash_obj) -> None:
        self.hash = hash_obj

    def write(self, chunk: bytes) -> int:
        self.hash.update(chunk)
        return len(chunk)


class FanOutWriter:
    """
    Forward each chunk to every sink before accepting the next one.

    If sinks fail on a chunk, the first failure is raised and the others are
    logged so none of them goes unreported.
    """

    def __init__(self, *sinks: Sink) -> None:
        self.sinks = sinks
        self.bytes_written = 0

    def write(self, chunk: bytes) -> int:
        errors = []
        for sink in self.sinks:
            try:
                sink.write(chunk)
            except Exception as e:
                errors.append(e)
        if errors:
            for other in errors[1:]:
                logger.error(f"Additional sink failure after {self.bytes_written} bytes: {other!r}")
            raise errors[0]
        self.bytes_written += len(chunk)
        return len(chunk)


class _BodyReader:
    """
    Iterate a streamed response body, honouring a cancel event.

    Without a cancel event the body is read inline. With one, a daemon thread
    pulls chunks off the network into a bounded queue and the consuming
    thread polls that queue, so a read stalled inside the transport never
    delays cancellation. Chunks are passed on as the transport delivers them,
    without re-buffering.
    """

    def __init__(self, response: httpx.Response, url: str, cancel: Optional[threading.Event]) -> None:
        self.response = response
        self.url = url
        self.cancel = cancel
        self._queue: "queue.Queue[Tuple[str, object]]" = queue.Queue(maxsize=READER_QUEUE_DEPTH)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "_BodyReader":
        if self.cancel is not None:
            self._thread = threading.Thread(target=self._pump, daemon=True, name="layerstore-body-reader")
            self._thread.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        # The worker may still be blocked in a read; it exits after that
        # read returns, or when the caller closes the response
        self._stop.set()

    def __iter__(self) -> Iterator[bytes]:
        if self.cancel is None:
            yield from self.response.iter_bytes()
            return

        while True:
            self._check_cancel()
            try:
                tag, value = self._queue.get(timeout=CANCEL_POLL_S)
            except queue.Empty:
                continue
            if tag == "done":
                return
            if tag == "error":
                raise value
            self._check_cancel()
            yield value

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise FetchCancelled(f"Fetch of {self.url} cancelled", url=self.url)

    def _pump(self) -> None:
        try:
            for chunk in self.response.iter_bytes():
                if not self._offer(("chunk", chunk)):
                    return
            self._offer(("done", None))
        except Exception as e:
            # Re-raised on the consuming thread
            self._offer(("error", e))

    def _offer(self, item: Tuple[str, object]) -> bool:
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=CANCEL_POLL_S)
                return True
            except queue.Full:
                continue
        return False


class Fetcher:
    """
    HTTP fetch pipeline for Remotes.

    The httpx client may be injected (tests use httpx.MockTransport);
    otherwise one is built from settings and closed by close().
    """

    # Backoff between connection attempts when http_retry > 0
    retry_wait = wait_exponential(multiplier=1, min=1, max=10)

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        """
        Initialize fetcher.

        Args:
            settings: Settings with HTTP timeout, retry and chunk size
            client: Pre-built HTTP client (defaults to one built from settings)
        """
        self.settings = settings
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(
                connect=min(5.0, settings.http_timeout_s),
                read=settings.http_timeout_s,
                write=settings.http_timeout_s,
                pool=5.0,
            ),
            follow_redirects=True,
            verify=not settings.insecure,
            headers={"User-Agent": USER_AGENT},
        )

    def close(self):
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client:
            self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def download(
        self,
        store: DownloadStore,
        remote: Remote,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Remote:
        """
        Fetch ``remote`` and record its content hash.

        Always goes to the network, even if the Remote is already resolved.

        Args:
            store: Store bundle to fetch into
            remote: Remote to fetch (its first mirror is requested)
            cancel: Event that aborts the fetch between chunks when set
            timeout: Per-call HTTP timeout in seconds, overriding settings
            progress: Callback receiving (bytes so far, total or None)

        Returns:
            Copy of ``remote`` with ``file`` set to the content hash

        Raises:
            NetworkError: If the GET fails or returns a non-200 status
            FetchCancelled: If ``cancel`` was set during the fetch
            StoreIOError: If any store read or write fails
        """
        with store.locks.hold(remote.key()):
            return self._download_locked(store, remote, cancel=cancel, timeout=timeout, progress=progress)

    def resolve(
        self,
        store: DownloadStore,
        remote: Remote,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Tuple[Remote, bool]:
        """
        Return the resolved Remote, fetching only on a cache miss.

        The lookup and any fetch happen under the Remote's lock, so
        concurrent resolves of one name cause a single fetch.

        Returns:
            (resolved remote, True if served from the cache)
        """
        with store.locks.hold(remote.key()):
            cached = store.lookup(remote)
            if cached is not None and cached.resolved:
                if store.has_object(cached.file):
                    logger.debug(f"Cache hit for {remote.name}: {cached.file}")
                    return cached, True
                logger.warning(f"Remote {remote.name} points at missing object {cached.file}, fetching again")

            logger.debug(f"Cache miss for {remote.name}")
            target = cached if cached is not None else remote
            updated = self._download_locked(store, target, cancel=cancel, timeout=timeout, progress=progress)
            return updated, False

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _download_locked(
        self,
        store: DownloadStore,
        remote: Remote,
        *,
        cancel: Optional[threading.Event],
        timeout: Optional[float],
        progress: Optional[ProgressCallback],
    ) -> Remote:
        key = remote.key()
        url = remote.url
        remotes = store.store_for(RecordKind.REMOTE)
        landing = store.store_for(RecordKind.DOWNLOAD)
        objects = store.store_for(RecordKind.OBJECT)

        if not remotes.has(key):
            store.store(remote.model_copy(update={"file": ""}))

        if cancel is not None and cancel.is_set():
            raise FetchCancelled(f"Fetch of {url} cancelled", url=url)

        # Land the body while hashing it
        hasher = hashlib.sha256()
        response = self._open(url, timeout)
        try:
            total = _content_length(response)
            with landing.writer(key) as sink, _BodyReader(response, url, cancel) as body:
                tee = FanOutWriter(_HashSink(hasher), sink)
                try:
                    for chunk in body:
                        tee.write(chunk)
                        if progress is not None:
                            progress(tee.bytes_written, total)
                except (httpx.HTTPError, httpx.StreamError) as e:
                    raise NetworkError(f"Network error reading {url}: {e}", url=url) from e
        finally:
            response.close()

        content_hash = hasher.hexdigest()
        logger.debug(f"Landed {url} as {key} ({tee.bytes_written} bytes, sha256 {content_hash})")

        # Promote into the object store; identical bytes make this a no-op
        with landing.read_stream(key) as rs:
            objects.write_stream(content_hash, rs, overwrite=True, expected_sha256=content_hash)

        landing.erase(key)

        updated = remote.model_copy(update={"file": content_hash})
        store.store(updated)
        logger.info(f"Fetched {remote.name} -> {content_hash}")
        return updated

    def _open(self, url: str, timeout: Optional[float]) -> httpx.Response:
        """
        Issue the GET and return the response with its body unread.

        Only connection failures are retried, and only http_retry times.
        Any status other than 200, including other 2xx codes, is an error.
        """
        kwargs = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        request = self.client.build_request("GET", url, **kwargs)

        retrying = Retrying(
            stop=stop_after_attempt(self.settings.http_retry + 1),
            wait=self.retry_wait,
            retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
            reraise=True,
        )
        try:
            response = retrying(self.client.send, request, stream=True)
        except httpx.RequestError as e:
            raise NetworkError(f"Network error fetching {url}: {e}", url=url) from e

        if response.status_code != 200:
            response.close()
            raise NetworkError(
                f"Bad HTTP status code {response.status_code} fetching {url} (only 200 OK is accepted)",
                url=url,
                status=response.status_code,
            )
        return response


def _content_length(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("Content-Length")
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None
