"""
Bounded-concurrency page fetching with retries and drain detection.

A fixed pool of worker coroutines pulls FetchRequests off an asyncio.Queue.
Each request is fetched (retrying transient failures), then its on_complete
callback is invoked exactly once with (error, body). When nothing is queued
or in flight anymore the on_idle callback fires; if it queued nothing new,
the transport is drained and run() returns.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, List, Optional

import aiohttp

from config import (
    CONNECT_TIMEOUT,
    CONNECTION_LIMIT_PER_HOST,
    DNS_CACHE_TTL,
    KEEPALIVE_TIMEOUT,
    MAX_RETRIES,
    MAX_RETRY_DELAY,
    REQUEST_HEADERS,
    REQUEST_TIMEOUT,
    RETRY_DELAY,
    RETRYABLE_STATUSES,
)

CompletionCallback = Callable[[Optional["FetchError"], Optional[str]], None]
Fetcher = Callable[[str], Awaitable[str]]


class FetchError(Exception):
    """A page could not be fetched, even after retries."""

    def __init__(self, url: str, status: Optional[int] = None, attempts: int = 1,
                 reason: str = "", retry_after: Optional[float] = None,
                 transient: Optional[bool] = None):
        self.url = url
        self.status = status
        self.attempts = attempts
        self.reason = reason
        self.retry_after = retry_after
        self.transient = transient
        super().__init__(url)

    def __str__(self) -> str:
        detail = f"HTTP {self.status}" if self.status is not None else (self.reason or "network error")
        return f"{self.url}: {detail} after {self.attempts} attempt(s)"

    @property
    def retryable(self) -> bool:
        if self.transient is not None:
            return self.transient
        return self.status is None or self.status in RETRYABLE_STATUSES


@dataclass
class FetchRequest:
    """One queued page fetch."""
    url: str
    on_complete: CompletionCallback
    context: Any = None


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header; return seconds to wait, or None."""
    if not value or not value.strip():
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    diff = when.timestamp() - time.time()
    return max(1.0, diff) if diff > 0 else None


def backoff_delay(attempt: int, base: float = RETRY_DELAY, ceiling: float = MAX_RETRY_DELAY) -> float:
    """Exponential backoff with a little jitter, capped at `ceiling`."""
    if base <= 0:
        return 0.0
    return min(ceiling, base * (2 ** attempt)) * random.uniform(0.8, 1.2)


class FetchTransport:
    """
    Worker-pool fetcher.

    - At most `max_connections` fetches in flight
    - Retries network errors, timeouts and RETRYABLE_STATUSES up to `retries` times
    - Explicit per-fetch timeout (`timeout` seconds)
    - on_idle fires whenever queue and in-flight work both reach zero
    """

    def __init__(
        self,
        max_connections: int,
        retries: int = MAX_RETRIES,
        timeout: float = REQUEST_TIMEOUT,
        retry_delay: float = RETRY_DELAY,
        fetcher: Optional[Fetcher] = None,
        on_idle: Optional[Callable[[], None]] = None,
    ):
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self.max_connections = max_connections
        self.retries = retries
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.on_idle = on_idle

        self._fetcher = fetcher
        self._session: Optional[aiohttp.ClientSession] = None
        self._queue: "asyncio.Queue[Optional[FetchRequest]]" = asyncio.Queue()
        self._pending = 0       # queued + in flight
        self._in_flight = 0
        self._drained = False
        self._stopped = False

        # Counters for the dashboard
        self.completed = 0
        self.failed = 0
        self.total_retries = 0

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self):
        """Open the HTTP session (skipped when a custom fetcher is injected)."""
        if self._fetcher is not None or self._session is not None:
            return

        timeout = aiohttp.ClientTimeout(
            total=self.timeout,
            connect=CONNECT_TIMEOUT,
            sock_read=self.timeout,
        )
        connector = aiohttp.TCPConnector(
            limit=self.max_connections,
            limit_per_host=CONNECTION_LIMIT_PER_HOST,
            ttl_dns_cache=DNS_CACHE_TTL,
            keepalive_timeout=KEEPALIVE_TIMEOUT,
            enable_cleanup_closed=True,
        )
        self._session = aiohttp.ClientSession(
            headers=REQUEST_HEADERS,
            timeout=timeout,
            connector=connector,
        )

    async def close(self):
        """Close the session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    # -------------------------------------------------------------------------
    # Queueing
    # -------------------------------------------------------------------------

    def enqueue(self, request: FetchRequest):
        """Queue a fetch. Its on_complete runs exactly once, success or failure."""
        if self._drained:
            raise RuntimeError("transport already drained")
        self._pending += 1
        self._queue.put_nowait(request)

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queue_size(self) -> int:
        return self._pending - self._in_flight

    @property
    def drained(self) -> bool:
        return self._drained

    def stop(self):
        """Stop the workers after their current fetch; queued requests are dropped."""
        self._stopped = True
        self._release_workers()

    def _release_workers(self):
        for _ in range(self.max_connections):
            self._queue.put_nowait(None)

    def _check_idle(self):
        """Fire on_idle when no work is left; drain if it added none."""
        if self._pending or self._drained:
            return
        if self.on_idle is not None and not self._stopped:
            self.on_idle()
        if self._pending == 0:
            self._drained = True
            self._release_workers()

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def _http_get(self, url: str) -> str:
        """Single GET through the shared session."""
        if self._session is None:
            raise RuntimeError("transport not initialized")
        try:
            async with self._session.get(url, allow_redirects=True) as response:
                if response.status != 200:
                    raise FetchError(
                        url,
                        status=response.status,
                        retry_after=parse_retry_after(response.headers.get("Retry-After")),
                    )
                # Pages whose bytes do not match the declared charset still parse
                return await response.text(errors="replace")
        except asyncio.TimeoutError:
            raise FetchError(url, reason=f"timed out after {self.timeout}s") from None
        except aiohttp.ClientError as e:
            raise FetchError(url, reason=type(e).__name__) from e

    async def fetch(self, url: str) -> str:
        """
        Fetch a page, retrying transient failures.

        Raises FetchError once retries are exhausted or on a non-retryable
        status (e.g. 404).
        """
        fetcher = self._fetcher or self._http_get
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(fetcher(url), timeout=self.timeout)
            except asyncio.TimeoutError:
                error = FetchError(url, reason=f"timed out after {self.timeout}s")
            except FetchError as e:
                error = e
            except UnicodeDecodeError as e:
                error = FetchError(url, reason=f"undecodable body ({e.reason})", transient=False)
            except (aiohttp.ClientError, OSError, ValueError) as e:
                error = FetchError(url, reason=type(e).__name__)

            if not error.retryable or attempt >= self.retries:
                error.attempts = attempt + 1
                raise error

            if error.retry_after is not None:
                delay = min(error.retry_after, MAX_RETRY_DELAY)
            else:
                delay = backoff_delay(attempt, base=self.retry_delay)
            attempt += 1
            self.total_retries += 1
            if delay > 0:
                await asyncio.sleep(delay)

    async def _process(self, request: FetchRequest):
        error: Optional[FetchError] = None
        body: Optional[str] = None
        try:
            body = await self.fetch(request.url)
            self.completed += 1
        except FetchError as e:
            error = e
            self.failed += 1
        request.on_complete(error, body)

    async def _worker(self, worker_id: int):
        """Worker coroutine that processes requests from the queue."""
        while True:
            request = await self._queue.get()
            if request is None or self._stopped:
                return

            self._in_flight += 1
            try:
                await self._process(request)
            finally:
                self._in_flight -= 1
                self._pending -= 1

            self._check_idle()

    async def run(self):
        """Run the workers until the transport drains (or stop() is called)."""
        workers: List[asyncio.Task] = [
            asyncio.create_task(self._worker(i)) for i in range(self.max_connections)
        ]
        try:
            # Nothing queued up front still counts as idle
            self._check_idle()
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                worker.cancel()
