"""
Remote image fetcher that materializes local copies.

For each key at most one download runs at a time (see CacheRegistry).
A download fetches the remote bytes with a bounded timeout, retries
transient failures with exponential backoff, writes the bytes through the
LocalStore and only then marks the entry READY.
"""

from __future__ import annotations

import asyncio

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from skumirror.cache.registry import CacheRegistry
from skumirror.config import Settings, get_settings
from skumirror.exceptions import MirrorError, NetworkError, RemoteStatusError
from skumirror.logging import get_logger, log_context
from skumirror.store.local import LocalStore
from skumirror.types import CacheKey, EntryStatus, ErrorKind, MaterializeResult

logger = get_logger(__name__)

ACCEPTED_CONTENT_TYPES = ("image/", "application/octet-stream", "binary/octet-stream")


def is_retryable(exc: BaseException) -> bool:
    """Only transient network failures earn another attempt."""
    return isinstance(exc, NetworkError) and exc.retryable


class Materializer:
    """Fetches remote images and records them in the registry.

    Features:
    - Single-flight per key; concurrent callers share one download
    - Per-fetch timeout and a global limit on concurrent fetches
    - Bounded retries with exponential backoff for transient failures
    - Write-then-record ordering: READY only after the file is in place
    """

    def __init__(
        self,
        registry: CacheRegistry,
        store: LocalStore,
        timeout: float = 15.0,
        max_attempts: int = 3,
        backoff_min: float = 0.5,
        backoff_max: float = 8.0,
        max_concurrency: int = 8,
        max_bytes: int = 10 * 1024 * 1024,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the materializer.

        Args:
            registry: Registry owning entry state.
            store: Store receiving the downloaded bytes.
            timeout: Upper bound in seconds for one fetch, end to end.
            max_attempts: Fetch attempts per download.
            backoff_min: Shortest wait between attempts.
            backoff_max: Longest wait between attempts.
            max_concurrency: Maximum remote fetches running at once.
            max_bytes: Largest payload accepted.
            user_agent: User-Agent header sent to remote hosts.
            transport: Optional httpx transport (used by tests).
        """
        self.registry = registry
        self.store = store
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.max_bytes = max_bytes
        self.user_agent = user_agent
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        registry: CacheRegistry,
        store: LocalStore,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> Materializer:
        settings = settings or get_settings()
        return cls(
            registry,
            store,
            timeout=settings.FETCH_TIMEOUT_SECONDS,
            max_attempts=settings.MAX_ATTEMPTS,
            backoff_min=settings.BACKOFF_MIN_SECONDS,
            backoff_max=settings.BACKOFF_MAX_SECONDS,
            max_concurrency=settings.MAX_CONCURRENT_FETCHES,
            max_bytes=settings.MAX_IMAGE_BYTES,
            user_agent=settings.USER_AGENT,
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Accept": "image/*,*/*;q=0.8"}
            if self.user_agent:
                headers["User-Agent"] = self.user_agent
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def materialize(self, key: CacheKey, remote_url: str) -> MaterializeResult:
        """Ensure a local copy of ``remote_url`` exists under ``key``.

        READY keys return their existing path without fetching. If a
        download for ``key`` is already running, this call waits for it and
        returns its result. Cancelling the caller does not cancel the
        download.

        Args:
            key: Validated cache key.
            remote_url: Source URL; only used when a new download starts.

        Returns:
            MaterializeResult with the local path or the failure kind.
        """
        entry = self.registry.lookup(key)
        if entry.status is EntryStatus.READY and entry.local_path:
            return MaterializeResult.ok(entry.local_path)

        task = self.registry.flight(key)
        if task is None:
            task = self.registry.start_flight(
                key, remote_url, self._download(key, remote_url)
            )
        else:
            logger.debug("Joining in-flight download", key=str(key))

        return await asyncio.shield(task)

    async def _download(self, key: CacheKey, remote_url: str) -> MaterializeResult:
        """Body of a single flight. Always leaves the entry READY or FAILED."""
        with log_context(cache_key=str(key)):
            try:
                content = await self._fetch_with_retries(key, remote_url)
                local_path = await asyncio.to_thread(self.store.write, key, content)
            except MirrorError as e:
                kind = e.kind or ErrorKind.NETWORK_ERROR
                entry = self.registry.lookup(key)
                self.registry.mark_failed(key, kind, e.message)
                logger.error(
                    "Materialize failed",
                    url=remote_url,
                    error=str(e),
                    kind=kind.value,
                    attempts=entry.attempt_count,
                )
                return MaterializeResult.failed(kind, e.message)
            except Exception as e:
                self.registry.mark_failed(key, ErrorKind.NETWORK_ERROR, str(e))
                logger.exception("Unexpected materialize error", url=remote_url)
                return MaterializeResult.failed(ErrorKind.NETWORK_ERROR, str(e))

            self.registry.mark_ready(key, local_path)
            logger.info(
                "Materialized image",
                url=remote_url,
                local_path=local_path,
                size=len(content),
            )
            return MaterializeResult.ok(local_path)

    async def _fetch_with_retries(self, key: CacheKey, remote_url: str) -> bytes:
        retrying = AsyncRetrying(
            retry=retry_if_exception(is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_min, min=self.backoff_min, max=self.backoff_max
            ),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                number = self.registry.record_attempt(key)
                logger.debug("Fetching image", url=remote_url, attempt=number)
                return await self._fetch(remote_url)
        raise NetworkError("Retry loop ended without a result", retryable=False)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Fetch attempt failed, retrying",
            attempt=retry_state.attempt_number,
            wait=round(retry_state.next_action.sleep, 2) if retry_state.next_action else 0,
            error=str(exc),
        )

    async def _fetch(self, url: str) -> bytes:
        """Fetch ``url`` once, bounded by the timeout and the concurrency limit.

        Raises:
            NetworkError: With ``retryable`` set for transient failures.
        """
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError) as e:
            raise NetworkError(
                f"Malformed URL: {e}", context={"url": url}, retryable=False
            ) from e
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise NetworkError(
                "Only absolute http(s) URLs can be mirrored",
                context={"url": url},
                retryable=False,
            )

        async with self._semaphore:
            try:
                return await asyncio.wait_for(self._read(parsed), timeout=self.timeout)
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                raise NetworkError(
                    f"Timed out after {self.timeout}s", context={"url": url}
                ) from e
            except (httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
                raise NetworkError(
                    f"Malformed URL: {e}", context={"url": url}, retryable=False
                ) from e
            except httpx.TransportError as e:
                raise NetworkError(
                    f"Connection failed: {e.__class__.__name__}",
                    context={"url": url, "error": str(e)},
                ) from e

    async def _read(self, url: httpx.URL) -> bytes:
        client = await self._get_client()
        async with client.stream("GET", url) as response:
            if not response.is_success:
                raise RemoteStatusError(
                    response.status_code, str(url), response.reason_phrase
                )

            content_type = response.headers.get("content-type", "").lower()
            if content_type and not content_type.startswith(ACCEPTED_CONTENT_TYPES):
                raise NetworkError(
                    f"Unexpected content type: {content_type}",
                    context={"url": str(url)},
                    retryable=False,
                )

            expected = _content_length(response)
            if expected is not None and expected > self.max_bytes:
                raise NetworkError(
                    f"Image too large: {expected} bytes",
                    context={"url": str(url)},
                    retryable=False,
                )

            chunks: list[bytes] = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > self.max_bytes:
                    raise NetworkError(
                        f"Image too large: more than {self.max_bytes} bytes",
                        context={"url": str(url)},
                        retryable=False,
                    )
                chunks.append(chunk)

            # Content-Length counts encoded bytes; only compare identity bodies.
            encoding = response.headers.get("content-encoding", "identity").lower()
            if expected is not None and encoding == "identity" and received < expected:
                raise NetworkError(
                    f"Truncated body: {received} of {expected} bytes",
                    context={"url": str(url)},
                )

        content = b"".join(chunks)
        if not content:
            raise NetworkError(
                "Empty response body", context={"url": str(url)}, retryable=False
            )
        return content


def _content_length(response: httpx.Response) -> int | None:
    value = response.headers.get("content-length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None

