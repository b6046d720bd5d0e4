"""Ingest client pushing audio chunks to a relay over WebSocket."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, Callable
from contextlib import suppress

from aiohttp import ClientSession, ClientWebSocketResponse, WSMsgType
from yarl import URL

from aioaudiorelay.models import OutputMode, SourceFormat

logger = logging.getLogger(__name__)

DisconnectCallback = Callable[[int | None], None]
"""Called with the WebSocket close code once the connection ends."""


class IngestClient:
    """
    Async client for the relay's ingest endpoint.

    The client must be created within an async context. Audio is sent as one
    binary WebSocket message per chunk, in the order ``send_chunk`` is called.
    """

    _session: ClientSession | None
    _owns_session: bool
    _ws: ClientWebSocketResponse | None
    _reader_task: asyncio.Task[None] | None
    _send_lock: asyncio.Lock
    _close_code: int | None
    _disconnect_callbacks: list[DisconnectCallback]
    bytes_sent: int

    def __init__(
        self,
        *,
        token: str | None = None,
        source_format: SourceFormat | None = None,
        output_mode: OutputMode | None = None,
        session: ClientSession | None = None,
        heartbeat: float = 30.0,
    ) -> None:
        """
        Create a new ingest client.

        Args:
            token: Bearer token sent in the Authorization header.
            source_format: Format announced with ``?format=``. The relay's
                default applies if None.
            output_mode: Recording override announced with ``?output=``.
            session: Optional aiohttp ClientSession. If None, a session is created
                and managed by this client.
            heartbeat: Seconds between WebSocket pings.
        """
        self._token = token
        self._source_format = source_format
        self._output_mode = output_mode
        self._heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None
        self._loop = asyncio.get_running_loop()
        self._ws = None
        self._reader_task = None
        self._send_lock = asyncio.Lock()
        self._close_code = None
        self._disconnect_callbacks = []
        self.bytes_sent = 0

    @property
    def connected(self) -> bool:
        """Return True if the client currently has an open connection."""
        return self._ws is not None and not self._ws.closed

    @property
    def close_code(self) -> int | None:
        """Close code sent by the relay, once the connection has ended."""
        return self._close_code

    def build_url(self, url: str) -> URL:
        """Add the format and output query parameters to an ingest URL."""
        query: dict[str, str] = {}
        if self._source_format is not None:
            query["format"] = self._source_format.value
        if self._output_mode is not None:
            query["output"] = self._output_mode.value
        return URL(url).update_query(query) if query else URL(url)

    async def connect(self, url: str) -> None:
        """Connect to the relay's ingest endpoint."""
        if self.connected:
            logger.debug("Already connected")
            return

        if self._session is None:
            self._session = ClientSession()

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
        target = self.build_url(url)
        logger.info("Connecting to relay at %s", target)
        self._close_code = None
        self._ws = await self._session.ws_connect(
            target, heartbeat=self._heartbeat, headers=headers
        )
        self._reader_task = self._loop.create_task(self._reader_loop())

    async def send_chunk(self, data: bytes) -> None:
        """
        Send one chunk of audio.

        Raises:
            RuntimeError: If the client is not connected.
        """
        if self._ws is None or self._ws.closed:
            raise RuntimeError("WebSocket is not connected")
        async with self._send_lock:
            await self._ws.send_bytes(data)
        self.bytes_sent += len(data)

    async def stream(self, chunks: AsyncIterable[bytes]) -> int:
        """Send every chunk of an async iterable, stop early if the relay closes."""
        count = 0
        async for chunk in chunks:
            if not self.connected:
                logger.warning("Relay closed the connection (code=%s)", self._close_code)
                break
            await self.send_chunk(chunk)
            count += 1
        return count

    async def wait_closed(self) -> int | None:
        """Wait until the relay closes the connection and return the close code."""
        if self._reader_task is not None:
            with suppress(asyncio.CancelledError):
                await asyncio.shield(self._reader_task)
        return self._close_code

    async def disconnect(self) -> None:
        """Close the connection and release resources."""
        current_task = asyncio.current_task(loop=self._loop)
        if self._ws is not None:
            await self._ws.close()
            if self._close_code is None:
                self._close_code = self._ws.close_code
        if self._reader_task is not None:
            if self._reader_task is not current_task:
                with suppress(asyncio.CancelledError):
                    await self._reader_task
            self._reader_task = None
        self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def add_disconnect_listener(self, callback: DisconnectCallback) -> Callable[[], None]:
        """
        Register a callback invoked with the close code when the connection ends.

        Returns a function to remove the listener.
        """
        self._disconnect_callbacks.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._disconnect_callbacks.remove(callback)

        return _remove

    async def _reader_loop(self) -> None:
        ws = self._ws
        assert ws is not None
        try:
            async for msg in ws:
                if msg.type is WSMsgType.ERROR:
                    logger.error("WebSocket error: %s", ws.exception())
                    break
                logger.debug("Ignoring %s message from relay", msg.type.name)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("WebSocket reader encountered an error")
        finally:
            self._close_code = ws.close_code
            logger.info("Connection to relay closed (code=%s)", self._close_code)
            self._notify_disconnect()

    def _notify_disconnect(self) -> None:
        for cb in list(self._disconnect_callbacks):
            try:
                cb(self._close_code)
            except Exception:
                logger.exception("Error in disconnect callback")
