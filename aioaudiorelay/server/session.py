"""Represents a single ingest connection and the transcoding legs it feeds."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from uuid import uuid4

from aiohttp import WSCloseCode, WSMsgType, web

from aioaudiorelay.models import (
    LegKind,
    OutputMode,
    RelayConfig,
    SessionInfo,
    SessionState,
    SourceFormat,
)

from .broadcaster import FanoutBroadcaster, HeaderCache
from .normalizer import WebmNormalizer
from .pipeline import (
    PipelineManager,
    SpawnError,
    SubprocessEvent,
    SubprocessExitEvent,
    SubprocessHandle,
    SubprocessOutputEvent,
)
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

_LEG_ORDER = (LegKind.DURABLE_FILE, LegKind.LIVE_FANOUT, LegKind.LIVE_NETWORK)


class RelaySession:
    """
    One admitted ingest connection.

    The session spawns its transcoding legs, routes every binary WebSocket
    message to them in receipt order and tears everything down when the
    connection ends or a running leg exits. A leg that dies while starting is
    dropped like one that failed to spawn. Authorization happens in RelayServer
    before a session is created.
    """

    _registry: SessionRegistry
    """Shared counters and the set of active sessions."""
    _pipeline: PipelineManager
    _config: RelayConfig
    _session_id: str
    _source_format: SourceFormat
    _output_mode: OutputMode
    _state: SessionState
    _wsock: web.WebSocketResponse | None
    """Ingest WebSocket, already prepared by the server."""
    _legs: dict[LegKind, SubprocessHandle]
    """Running legs. Legs that failed to spawn are never added."""
    _failed_legs: dict[LegKind, str]
    """Legs that failed to spawn, with the reason."""
    _leg_spawned_at: dict[LegKind, float]
    """Loop time at which each running leg was spawned."""
    _fed_legs: set[LegKind]
    """Legs that accepted at least one chunk."""
    _retired_legs: list[asyncio.Task[int | None]]
    """Cleanup of legs that exited during startup."""
    _leg_unsubs: list[Callable[[], None]]
    _broadcaster: FanoutBroadcaster | None
    """Fan-out of the live Ogg leg, only set while that leg runs."""
    _normalizer: WebmNormalizer | None
    """Only set for WebM sources."""
    _close_task: asyncio.Task[None] | None
    bytes_received: int
    """Ingest bytes accepted by this session."""

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        pipeline: PipelineManager,
        config: RelayConfig,
        source_format: SourceFormat,
        output_mode: OutputMode,
        wsock: web.WebSocketResponse | None = None,
        remote: str | None = None,
    ) -> None:
        """
        Initialize an admitted session.

        Args:
            registry: Registry the session registers with while it is open.
            pipeline: Manager used to spawn the legs.
            config: Relay settings.
            source_format: Format of the ingest audio.
            output_mode: Whether to run the recording leg.
            wsock: Prepared ingest WebSocket. Optional so the routing can be
                driven without a connection.
            remote: Peer address, for logging.
        """
        self._registry = registry
        self._pipeline = pipeline
        self._config = config
        self._session_id = str(uuid4())
        self._source_format = source_format
        self._output_mode = output_mode
        self._state = SessionState.ADMITTED
        self._wsock = wsock
        self._remote = remote
        self._legs = {}
        self._failed_legs = {}
        self._leg_spawned_at = {}
        self._fed_legs = set()
        self._retired_legs = []
        self._leg_unsubs = []
        self._broadcaster = None
        self._normalizer = (
            WebmNormalizer(self._write_all) if source_format.requires_normalization else None
        )
        self._close_task = None
        self.bytes_received = 0
        self._logger = logger.getChild(self._session_id)
        self._logger.info(
            "Session admitted fmt=%s output=%s from %s",
            source_format.value,
            output_mode.value,
            remote or "unknown",
        )

    @property
    def session_id(self) -> str:
        """Unique identifier of this session."""
        return self._session_id

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._state

    @property
    def source_format(self) -> SourceFormat:
        """Format of the ingest audio."""
        return self._source_format

    @property
    def output_mode(self) -> OutputMode:
        """Whether this session records to a file."""
        return self._output_mode

    @property
    def legs(self) -> dict[LegKind, SubprocessHandle]:
        """Running legs by kind."""
        return dict(self._legs)

    @property
    def failed_legs(self) -> dict[LegKind, str]:
        """Legs that could not be spawned, with the reason."""
        return dict(self._failed_legs)

    @property
    def broadcaster(self) -> FanoutBroadcaster | None:
        """Fan-out of the live Ogg stream, if that leg runs."""
        return self._broadcaster

    @property
    def normalizer(self) -> WebmNormalizer | None:
        """WebM normalizer, only present for WebM sources."""
        return self._normalizer

    @property
    def closed(self) -> bool:
        """True once teardown has started."""
        return self._state in (SessionState.CLOSING, SessionState.CLOSED)

    def configured_legs(self) -> list[LegKind]:
        """Return the legs this session should run."""
        wanted = {
            LegKind.DURABLE_FILE: self._output_mode is OutputMode.FILE,
            LegKind.LIVE_FANOUT: self._config.live_fanout,
            LegKind.LIVE_NETWORK: bool(self._config.rtp_url),
        }
        return [kind for kind in _LEG_ORDER if wanted[kind]]

    async def start(self) -> None:
        """Register the session and spawn its legs."""
        self._registry.add(self)
        await self.start_pipeline()

    async def start_pipeline(self) -> None:
        """
        Spawn every configured leg.

        A leg that fails to start is logged and skipped, the remaining legs
        are still started.
        """
        if self._state is not SessionState.ADMITTED:
            return
        for kind in self.configured_legs():
            try:
                handle = await self._pipeline.spawn(
                    kind,
                    self._source_format,
                    session_id=self._session_id,
                    target=self._config.rtp_url if kind is LegKind.LIVE_NETWORK else None,
                    parent_logger=self._logger,
                )
            except SpawnError as err:
                self._logger.error("Failed to start %s leg: %s", kind.value, err)
                self._failed_legs[kind] = str(err)
                continue
            if self._state is not SessionState.ADMITTED:
                # Closed while spawning
                await handle.terminate(self._config.terminate_grace)
                continue
            self._legs[kind] = handle
            self._leg_spawned_at[kind] = asyncio.get_running_loop().time()
            if kind is LegKind.LIVE_FANOUT:
                self._broadcaster = FanoutBroadcaster(HeaderCache(), name=self._session_id)
            self._leg_unsubs.append(handle.add_event_listener(self._on_leg_event))

        if self._state is not SessionState.ADMITTED:
            return
        if not self._legs:
            self._logger.warning("No leg is running, ingest audio will be discarded")
        self._state = SessionState.PIPED

    def handle_chunk(self, data: bytes) -> None:
        """Route one ingest chunk to every open leg."""
        if self._state not in (SessionState.PIPED, SessionState.STREAMING):
            return
        if self._state is SessionState.PIPED:
            self._state = SessionState.STREAMING
        size = len(data)
        if size > self._config.max_chunk_bytes:
            self._registry.stats.dropped_chunks += 1
            self._logger.debug("Dropping oversized chunk (%d bytes)", size)
            return
        self.bytes_received += size
        self._registry.stats.add_ingest(size)
        if self._normalizer is not None:
            self._normalizer.push(data)
        else:
            self._write_all(data)

    def _write_all(self, chunk: bytes) -> None:
        stats = self._registry.stats
        for handle in self._legs.values():
            if not handle.input_open:
                continue
            if not handle.write(chunk):
                continue
            self._fed_legs.add(handle.kind)
            if handle.kind is LegKind.LIVE_NETWORK:
                stats.network_bytes += len(chunk)
            elif handle.kind is LegKind.DURABLE_FILE:
                stats.file_bytes += len(chunk)

    def _on_leg_event(self, handle: SubprocessHandle, event: SubprocessEvent) -> None:
        if isinstance(event, SubprocessOutputEvent):
            if handle.kind is LegKind.LIVE_FANOUT and self._broadcaster is not None:
                self._registry.stats.fanout_bytes += len(event.data)
                self._broadcaster.feed(event.data)
        elif isinstance(event, SubprocessExitEvent):
            if self.closed or self._legs.get(handle.kind) is not handle:
                return
            if self._is_startup_exit(handle):
                self._retire_leg(handle, f"exited during startup (code={event.returncode})")
                return
            self._logger.warning(
                "%s leg exited unexpectedly (code=%s)", handle.kind.value, event.returncode
            )
            task = asyncio.get_running_loop().create_task(
                self.close(
                    f"{handle.kind.value} leg exited", code=WSCloseCode.INTERNAL_ERROR
                )
            )
            task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)

    def _is_startup_exit(self, handle: SubprocessHandle) -> bool:
        if handle.kind not in self._fed_legs:
            return True
        spawned_at = self._leg_spawned_at.get(handle.kind)
        if spawned_at is None:
            return False
        elapsed = asyncio.get_running_loop().time() - spawned_at
        return elapsed < self._config.leg_startup_grace

    def _retire_leg(self, handle: SubprocessHandle, reason: str) -> None:
        """Treat a leg that died while starting like one that failed to spawn."""
        kind = handle.kind
        self._logger.error("Failed to start %s leg: %s", kind.value, reason)
        self._failed_legs[kind] = reason
        self._legs.pop(kind, None)
        self._leg_spawned_at.pop(kind, None)
        handle.close_input()
        if kind is LegKind.LIVE_FANOUT and self._broadcaster is not None:
            self._broadcaster.close()
            self._broadcaster = None
        # Reaps the reader tasks of the exited process
        self._retired_legs.append(
            asyncio.get_running_loop().create_task(
                handle.terminate(self._config.terminate_grace)
            )
        )
        if not self._legs:
            self._logger.warning("No leg is running, ingest audio will be discarded")

    async def run(self) -> None:
        """Process ingest messages until the connection ends, then close the session."""
        wsock = self._wsock
        assert wsock is not None
        try:
            async for msg in wsock:
                if msg.type == WSMsgType.BINARY:
                    self.handle_chunk(msg.data)
                elif msg.type == WSMsgType.TEXT:
                    self._logger.debug("Ignoring text message")
                elif msg.type == WSMsgType.ERROR:
                    self._logger.warning("WebSocket error: %s", wsock.exception())
                    break
            self._logger.debug("wsock was closed")
        except asyncio.CancelledError:
            self._logger.debug("Message loop cancelled")
        except Exception:
            self._logger.exception("Unexpected error in ingest connection")
        finally:
            await self.close(f"connection closed (code={wsock.close_code})")

    async def close(
        self, reason: str = "closed", *, code: int = WSCloseCode.OK
    ) -> None:
        """
        Tear the session down.

        Closes every leg's input, terminates every leg, closes all pull clients
        and the ingest connection. Concurrent and repeated calls share one
        teardown, so racing triggers stop each leg exactly once.
        """
        if self._close_task is None:
            self._close_task = asyncio.get_running_loop().create_task(
                self._close(reason, code)
            )
        await asyncio.shield(self._close_task)

    async def _close(self, reason: str, code: int) -> None:
        self._state = SessionState.CLOSING
        self._logger.info("Closing session: %s", reason)

        handles = list(self._legs.values())
        for handle in handles:
            handle.close_input()
        results = await asyncio.gather(
            *(handle.terminate(self._config.terminate_grace) for handle in handles),
            return_exceptions=True,
        )
        for handle, result in zip(handles, results, strict=True):
            if isinstance(result, BaseException):
                self._logger.warning("Error stopping %s leg: %s", handle.kind.value, result)
            else:
                self._logger.debug("%s leg stopped (code=%s)", handle.kind.value, result)
        if self._retired_legs:
            await asyncio.gather(*self._retired_legs, return_exceptions=True)

        for unsub in self._leg_unsubs:
            unsub()
        self._leg_unsubs.clear()

        if self._broadcaster is not None:
            self._broadcaster.close()

        if self._wsock is not None and not self._wsock.closed:
            try:
                await self._wsock.close(code=code, message=reason.encode()[:120])
            except Exception:
                self._logger.exception("Failed to close websocket")

        self._registry.remove(self)
        self._state = SessionState.CLOSED
        self._logger.info("Session closed (%d bytes received)", self.bytes_received)

    def info(self) -> SessionInfo:
        """Summarize the session for the stats endpoint."""
        return SessionInfo(
            session_id=self._session_id,
            source_format=self._source_format,
            state=self._state,
            legs=list(self._legs),
            failed_legs=list(self._failed_legs),
            live_consumers=len(self._broadcaster) if self._broadcaster is not None else 0,
            bytes_received=self.bytes_received,
            remote=self._remote,
        )
