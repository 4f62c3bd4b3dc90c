from typing import Dict, Any, Optional, Callable, Awaitable, AsyncIterator
import asyncio
import time

import httpx
import structlog

from memory_relay.domain.streaming.sse import KEEPALIVE_FRAME, extract_stream_text
from memory_relay.infrastructure.observability.logging import relay_logger, metrics

logger = structlog.get_logger(__name__)

_END = object()


class RelayError(Exception):
    """Base error for the memory relay"""


class UpstreamError(RelayError):
    """Upstream call could not be established"""


class UpstreamStatusError(UpstreamError):
    """Upstream answered with an error status"""

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"Upstream returned HTTP {status_code}")
        self.status_code = status_code
        self.body = body


class UpstreamStream:
    """An established upstream stream relayed chunk by chunk.

    The reader and the idle watchdog start as soon as the stream is opened
    and feed one queue, so the stream settles even if nobody ever iterates
    ``relay()``. Whichever of completion, upstream error, idle timeout,
    downstream disconnect or an explicit ``finish()`` happens first settles
    it: both tasks are cancelled, the upstream response is closed in a
    detached task and ``on_complete`` fires, exactly once.
    """

    def __init__(
        self,
        response: httpx.Response,
        idle_timeout: float,
        watchdog_interval: float,
        keepalive: bool = True,
        on_complete: Optional[Callable[["UpstreamStream"], None]] = None
    ):
        self.response = response
        self.idle_timeout = idle_timeout
        self.watchdog_interval = watchdog_interval
        self.keepalive = keepalive
        self.on_complete = on_complete

        self.collected = bytearray()
        self.chunks_received = 0
        self.completed = False
        self.idle_tripped = False
        self.error: Optional[str] = None

        self._queue: asyncio.Queue = asyncio.Queue()
        self._last_chunk_at = 0.0
        self._reader: Optional[asyncio.Task] = None
        self._watchdog: Optional[asyncio.Task] = None
        self._finished = False
        self._closed = False
        self._close_task: Optional[asyncio.Task] = None

    def start(self):
        """Begin pumping upstream chunks and watching for idleness"""

        loop = asyncio.get_running_loop()
        self._last_chunk_at = loop.time()
        self._reader = loop.create_task(self._read())
        self._watchdog = loop.create_task(self._watch())

    @property
    def finished(self) -> bool:
        return self._finished

    async def relay(self) -> AsyncIterator[bytes]:
        """Yield upstream bytes unchanged, preceded by an optional keep-alive frame"""

        try:
            if self.keepalive:
                yield KEEPALIVE_FRAME

            while True:
                item = await self._queue.get()
                if item is _END:
                    break
                yield item
        finally:
            # Client disconnect lands here too
            self.finish()

    def finish(self):
        """Settle the stream; later calls are no-ops"""

        if self._finished:
            return
        self._finished = True

        current = asyncio.current_task()
        for task in (self._watchdog, self._reader):
            if task is not None and task is not current:
                task.cancel()
        self._queue.put_nowait(_END)

        self._close_task = asyncio.get_running_loop().create_task(self.aclose())
        if self.on_complete is not None:
            self.on_complete(self)

    async def _read(self):
        """Pump upstream chunks into the relay queue"""

        loop = asyncio.get_running_loop()
        try:
            async for chunk in self.response.aiter_bytes():
                if not chunk:
                    continue
                self._last_chunk_at = loop.time()
                self.chunks_received += 1
                self.collected.extend(chunk)
                self._queue.put_nowait(chunk)
            self.completed = True
        except httpx.HTTPError as e:
            # Partial output already went downstream; nothing to retry
            self.error = str(e) or type(e).__name__
            metrics.increment_counter("relay.stream_interrupted")
            logger.warning("Upstream stream interrupted", error=self.error, chunks=self.chunks_received)
        finally:
            self.finish()

    async def _watch(self):
        """Settle the stream when no chunk has arrived within the idle window"""

        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.watchdog_interval)
            idle = loop.time() - self._last_chunk_at
            if idle > self.idle_timeout:
                self.idle_tripped = True
                metrics.increment_counter("relay.watchdog_trips")
                logger.warning(
                    "Upstream stream idle, closing",
                    idle_seconds=round(idle, 3),
                    idle_timeout=self.idle_timeout,
                    chunks=self.chunks_received
                )
                self.finish()
                return

    async def aclose(self):
        """Close the upstream response"""

        if self._closed:
            return
        self._closed = True
        await self.response.aclose()

    async def wait_closed(self):
        """Wait for the upstream response to be closed"""

        if self._close_task is not None:
            await self._close_task
        else:
            await self.aclose()

    def text(self) -> str:
        """Assistant text carried by the bytes relayed so far"""
        return extract_stream_text(bytes(self.collected))


class RelayStreamer:
    """Executes upstream chat-completion calls in buffered or streamed mode"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        upstream_url: str,
        api_key: Optional[str] = None,
        max_attempts: int = 2,
        idle_timeout: float = 90.0,
        watchdog_interval: float = 10.0,
        request_timeout: float = 180.0,
        keepalive: bool = True
    ):
        self.client = client
        self.upstream_url = upstream_url
        self.api_key = api_key
        self.max_attempts = max_attempts
        self.idle_timeout = idle_timeout
        self.watchdog_interval = watchdog_interval
        self.request_timeout = request_timeout
        self.keepalive = keepalive

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Buffered call: await the full upstream response"""

        body = dict(payload, stream=False)

        async def attempt() -> httpx.Response:
            response = await self.client.post(
                self.upstream_url,
                json=body,
                headers=self._headers(),
                timeout=self.request_timeout
            )
            if response.status_code >= 400:
                raise UpstreamStatusError(response.status_code, response.text[:500])
            return response

        response = await self._with_retry(attempt, stream=False)

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError("Upstream returned a non-JSON body") from e

    async def open_stream(
        self,
        payload: Dict[str, Any],
        on_complete: Optional[Callable[[UpstreamStream], None]] = None
    ) -> UpstreamStream:
        """Establish a streamed call; returns once upstream has sent headers"""

        body = dict(payload, stream=True)
        headers = self._headers()
        headers["Accept"] = "text/event-stream"
        headers["Accept-Encoding"] = "identity"

        async def attempt() -> httpx.Response:
            request = self.client.build_request(
                "POST",
                self.upstream_url,
                json=body,
                headers=headers,
                # Read stalls are the watchdog's job
                timeout=httpx.Timeout(self.request_timeout, read=None)
            )
            response = await self.client.send(request, stream=True)
            if response.status_code >= 400:
                try:
                    detail = (await response.aread()).decode("utf-8", errors="replace")[:500]
                except httpx.HTTPError:
                    detail = ""
                finally:
                    await response.aclose()
                raise UpstreamStatusError(response.status_code, detail)
            return response

        response = await self._with_retry(attempt, stream=True)

        upstream = UpstreamStream(
            response,
            idle_timeout=self.idle_timeout,
            watchdog_interval=self.watchdog_interval,
            keepalive=self.keepalive,
            on_complete=on_complete
        )
        upstream.start()
        return upstream

    async def _with_retry(self, attempt: Callable[[], Awaitable[httpx.Response]], stream: bool) -> httpx.Response:
        """Run a connection attempt, retrying establishment failures"""

        last_error: Optional[Exception] = None
        started = time.perf_counter()

        for number in range(1, self.max_attempts + 1):
            try:
                response = await attempt()
            except UpstreamStatusError as e:
                last_error = e
                relay_logger.log_upstream_attempt(
                    number, self.max_attempts, stream,
                    success=False, status_code=e.status_code, error=e.body[:200]
                )
            except httpx.TransportError as e:
                last_error = e
                relay_logger.log_upstream_attempt(
                    number, self.max_attempts, stream,
                    success=False, error=str(e) or type(e).__name__
                )
            else:
                relay_logger.log_upstream_attempt(
                    number, self.max_attempts, stream, status_code=response.status_code
                )
                metrics.record_latency(
                    "upstream_connect",
                    (time.perf_counter() - started) * 1000,
                    tags={"stream": str(stream).lower()}
                )
                return response

        metrics.increment_counter("upstream.failures")
        if isinstance(last_error, UpstreamError):
            raise last_error
        raise UpstreamError(f"Upstream unreachable after {self.max_attempts} attempts") from last_error
