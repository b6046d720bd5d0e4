"""Pull client of the live stream, served over a chunked HTTP response."""

from __future__ import annotations

import asyncio
import logging

from aiohttp import web

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class HttpStreamConsumer:
    """
    Adapts an aiohttp StreamResponse to the broadcaster's Consumer protocol.

    ``write`` only enqueues; a writer coroutine (``run``) sends the queued
    chunks. A full queue means the client is too slow, the write fails and the
    broadcaster evicts the consumer.
    """

    _response: web.StreamResponse
    _to_write: asyncio.Queue[bytes | None]
    """Chunks waiting to be sent, None ends the writer."""
    _closed: bool
    _writer_task: asyncio.Task[None] | None = None

    def __init__(
        self,
        response: web.StreamResponse,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        remote: str | None = None,
    ) -> None:
        """
        Initialize the consumer for a prepared response.

        Args:
            response: Response already prepared with streaming headers.
            queue_size: Chunks buffered before the consumer counts as too slow.
            remote: Peer address used in log messages.
        """
        self._response = response
        self._to_write = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._logger = logger.getChild(remote or "unknown")
        self.bytes_sent = 0

    @property
    def writable(self) -> bool:
        """False once the consumer was closed or its connection failed."""
        return not self._closed

    def write(self, data: bytes) -> bool:
        """Queue a chunk without blocking."""
        if self._closed:
            return False
        try:
            self._to_write.put_nowait(data)
        except asyncio.QueueFull:
            self._logger.warning("Write queue full, client too slow")
            return False
        return True

    def close(self) -> None:
        """Stop the writer after the chunks already queued."""
        if self._closed:
            return
        self._closed = True
        try:
            self._to_write.put_nowait(None)
        except asyncio.QueueFull:
            # No room for the sentinel, stop the writer right away
            if self._writer_task is not None and not self._writer_task.done():
                self._writer_task.cancel()

    async def run(self) -> None:
        """Send queued chunks until the consumer is closed or the client goes away."""
        self._writer_task = asyncio.current_task()
        try:
            while True:
                item = await self._to_write.get()
                if item is None:
                    break
                try:
                    await self._response.write(item)
                except ConnectionError:
                    self._logger.debug("Connection lost, ending writer")
                    break
                self.bytes_sent += len(item)
        except asyncio.CancelledError:
            self._logger.debug("Writer cancelled")
        finally:
            self._closed = True
            self._writer_task = None
