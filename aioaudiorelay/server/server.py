"""Audio relay server: WebSocket ingest, live Ogg pull clients and status endpoints."""

from __future__ import annotations

import asyncio
import hmac
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass

from aiohttp import web
from zeroconf import InterfaceChoice, IPVersion, NonUniqueNameException
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from aioaudiorelay.models import OutputMode, RelayConfig, SourceFormat
from aioaudiorelay.util import get_local_ip, parse_rtp_url

from .consumer import HttpStreamConsumer
from .pipeline import PipelineManager
from .registry import SessionRegistry
from .sdp import build_opus_sdp
from .session import RelaySession

logger = logging.getLogger(__name__)

CLOSE_UNAUTHORIZED = 4001
CLOSE_UNSUPPORTED_FORMAT = 4002

# Ingest messages above max_chunk_bytes times this close the connection
MAX_MESSAGE_FACTOR = 4

MDNS_SERVICE_TYPE = "_audiorelay._tcp.local."


class RelayEvent:
    """Base event type used by RelayServer.add_event_listener()."""


@dataclass
class SessionAddedEvent(RelayEvent):
    """An ingest session was admitted and its legs were started."""

    session_id: str


@dataclass
class SessionRemovedEvent(RelayEvent):
    """An ingest session was closed."""

    session_id: str


class RelayServer:
    """Accepts ingest connections and serves their live output."""

    LIVE_PATH = "/live.ogg"
    SESSION_LIVE_PATH = "/live/{session_id}.ogg"
    SDP_PATH = "/live.sdp"
    HEALTH_PATH = "/health"
    STATS_PATH = "/stats"

    _loop: asyncio.AbstractEventLoop
    _config: RelayConfig
    _name: str
    _registry: SessionRegistry
    _pipeline: PipelineManager
    _event_cbs: list[Callable[[RelayServer, RelayEvent], None]]
    _app: web.Application | None
    """Web application serving every route of the relay."""
    _app_runner: web.AppRunner | None
    """App runner for the web application."""
    _tcp_site: web.TCPSite | None
    """TCP site for the web application."""
    _zc: AsyncZeroconf | None
    """AsyncZeroconf instance, only set while advertising."""
    _mdns_service: AsyncServiceInfo | None
    """Registered mDNS service."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        config: RelayConfig,
        *,
        name: str = "audiorelay",
        pipeline: PipelineManager | None = None,
    ) -> None:
        """
        Initialize a new relay server.

        Args:
            loop: The asyncio event loop to use for asynchronous operations.
            config: Relay settings.
            name: Instance name used for mDNS advertising.
            pipeline: Manager spawning the transcoding legs. A manager built
                from ``config`` is used if omitted.
        """
        self._loop = loop
        self._config = config
        self._name = name
        self._registry = SessionRegistry(stats_interval=config.stats_interval)
        self._pipeline = pipeline or PipelineManager(config, loop)
        self._event_cbs = []
        self._app = None
        self._app_runner = None
        self._tcp_site = None
        self._zc = None
        self._mdns_service = None
        logger.debug("RelayServer initialized: name=%s", name)

    def _create_web_application(self) -> web.Application:
        """Create the aiohttp application with every route of the relay."""
        app = web.Application()
        app.router.add_get(self._config.ingest_path, self.on_ingest_connect)
        app.router.add_get(self.LIVE_PATH, self.on_live_connect)
        app.router.add_get(self.SESSION_LIVE_PATH, self.on_live_connect)
        app.router.add_get(self.SDP_PATH, self.on_sdp_request)
        app.router.add_get(self.HEALTH_PATH, self.on_health_request)
        app.router.add_get(self.STATS_PATH, self.on_stats_request)
        return app

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """Read-only access to the event loop used by this server."""
        return self._loop

    @property
    def config(self) -> RelayConfig:
        """Settings of this relay."""
        return self._config

    @property
    def registry(self) -> SessionRegistry:
        """Counters and active sessions."""
        return self._registry

    @property
    def sessions(self) -> list[RelaySession]:
        """Active ingest sessions, oldest first."""
        return self._registry.sessions

    def get_session(self, session_id: str) -> RelaySession | None:
        """Get the active session with the given id."""
        return self._registry.get(session_id)

    def is_authorized(self, request: web.Request) -> bool:
        """
        Check the ingest credentials of a request.

        A request passes when either the ``Authorization: Bearer`` header or the
        ``token`` query parameter carries the token. Every request passes when no
        token is configured.
        """
        expected = self._config.auth_token
        if not expected:
            return True
        candidates: list[str] = []
        header = request.headers.get("Authorization", "")
        if header.startswith("Bearer "):
            candidates.append(header.removeprefix("Bearer ").strip())
        if "token" in request.query:
            candidates.append(request.query["token"])
        matches = [
            hmac.compare_digest(candidate.encode(), expected.encode())
            for candidate in candidates
        ]
        return any(matches)

    async def on_ingest_connect(self, request: web.Request) -> web.StreamResponse:
        """Handle an incoming WebSocket connection from an ingest client."""
        logger.debug("Incoming ingest connection from %s", request.remote)
        # Chunks above max_chunk_bytes are dropped by the session, far larger
        # messages close the socket with 1009 before they are buffered
        wsock = web.WebSocketResponse(
            heartbeat=self._config.heartbeat_interval,
            max_msg_size=self._config.max_chunk_bytes * MAX_MESSAGE_FACTOR,
        )
        try:
            async with asyncio.timeout(10):
                await wsock.prepare(request)
        except TimeoutError:
            logger.warning("Timeout preparing ingest connection from %s", request.remote)
            return wsock

        if not self.is_authorized(request):
            logger.warning("Rejecting ingest connection from %s: unauthorized", request.remote)
            await wsock.close(code=CLOSE_UNAUTHORIZED, message=b"unauthorized")
            return wsock

        try:
            source_format = SourceFormat(
                request.query.get("format", self._config.input_format.value).lower()
            )
            output_mode = OutputMode(
                request.query.get("output", self._config.output_mode.value).lower()
            )
        except ValueError as err:
            logger.warning("Rejecting ingest connection from %s: %s", request.remote, err)
            await wsock.close(code=CLOSE_UNSUPPORTED_FORMAT, message=b"unsupported-format")
            return wsock

        session = RelaySession(
            registry=self._registry,
            pipeline=self._pipeline,
            config=self._config,
            source_format=source_format,
            output_mode=output_mode,
            wsock=wsock,
            remote=request.remote,
        )
        try:
            await session.start()
            self._signal_event(SessionAddedEvent(session.session_id))
            await session.run()
        finally:
            # Covers a handler cancelled before run() took over the teardown
            await session.close("ingest handler finished")
            self._signal_event(SessionRemovedEvent(session.session_id))
        return wsock

    async def on_live_connect(self, request: web.Request) -> web.StreamResponse:
        """Stream a session's live Ogg/Opus output to an HTTP pull client."""
        session_id = request.match_info.get("session_id")
        if session_id is not None:
            session = self._registry.get(session_id)
        else:
            session = self._registry.latest_live_session()
        if session is None or session.broadcaster is None or session.broadcaster.closed:
            raise web.HTTPNotFound(text="no live stream")
        broadcaster = session.broadcaster

        response = web.StreamResponse(
            headers={"Cache-Control": "no-store", "Connection": "keep-alive"}
        )
        response.content_type = "audio/ogg"
        response.enable_chunked_encoding()
        await response.prepare(request)

        consumer = HttpStreamConsumer(
            response, queue_size=self._config.consumer_queue_size, remote=request.remote
        )
        if not broadcaster.subscribe(consumer):
            return response
        logger.info(
            "Live client %s attached to session %s (%d listening)",
            request.remote,
            session.session_id,
            len(broadcaster),
        )
        try:
            await consumer.run()
        finally:
            broadcaster.unsubscribe(consumer)
            logger.info(
                "Live client %s detached (%d bytes sent)", request.remote, consumer.bytes_sent
            )
        return response

    async def on_sdp_request(self, request: web.Request) -> web.Response:
        """Serve the session description of the live RTP stream."""
        if not self._config.rtp_url:
            raise web.HTTPNotFound(text="RTP output is disabled")
        ip, port = parse_rtp_url(self._config.rtp_url)
        return web.Response(
            text=build_opus_sdp(ip, port, self._config.channels),
            content_type="application/sdp",
            headers={"Cache-Control": "no-store"},
        )

    async def on_health_request(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.Response(text="ok")

    async def on_stats_request(self, request: web.Request) -> web.Response:
        """Serve the current counters as JSON."""
        return web.Response(
            text=self._registry.snapshot().to_json(),
            content_type="application/json",
            headers={"Cache-Control": "no-store"},
        )

    def add_event_listener(
        self, callback: Callable[[RelayServer, RelayEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for session changes of the server.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: RelayEvent) -> None:
        """Signal an event to all registered listeners."""
        for cb in self._event_cbs:
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")

    async def start_server(self, advertise_addresses: list[str] | None = None) -> None:
        """
        Start listening on the configured host and port.

        :param advertise_addresses: List of IP addresses to advertise via mDNS
            when advertising is enabled. If None, auto-detects the local IP address.
        """
        if self._app is not None:
            logger.warning("Server is already running")
            return

        host, port = self._config.host, self._config.port
        logger.info("Starting relay server on port %d", port)
        self._app = self._create_web_application()
        self._app_runner = web.AppRunner(self._app)
        await self._app_runner.setup()

        try:
            self._tcp_site = web.TCPSite(
                self._app_runner,
                host=host if host != "0.0.0.0" else None,
                port=port,
            )
            await self._tcp_site.start()
        except OSError as e:
            logger.error("Failed to start server on %s:%d: %s", host, port, e)
            await self._app_runner.cleanup()
            self._app_runner = None
            await self._app.shutdown()
            self._app = None
            raise

        self._registry.start()
        logger.info("Ingest WebSocket on ws://%s:%d%s", host, port, self._config.ingest_path)
        if self._config.live_fanout:
            logger.info("Live Ogg/Opus on http://%s:%d%s", host, port, self.LIVE_PATH)
        if self._config.rtp_url:
            logger.info(
                "Live RTP to %s, SDP on http://%s:%d%s",
                self._config.rtp_url,
                host,
                port,
                self.SDP_PATH,
            )
        if self._config.output_mode is OutputMode.FILE:
            logger.info("Recording sessions to %s", self._config.output_path)

        if self._config.advertise_mdns:
            if advertise_addresses is not None:
                addresses = advertise_addresses
            elif local_ip := get_local_ip():
                addresses = [local_ip]
            else:
                addresses = []
            if addresses:
                await self._start_mdns_advertising(addresses=addresses, port=port)
            else:
                logger.warning(
                    "No IP addresses available for mDNS advertising. "
                    "Consider specifying addresses manually via advertise_addresses parameter."
                )

    async def stop_server(self) -> None:
        """Stop the HTTP server."""
        await self._stop_mdns()

        if self._tcp_site:
            await self._tcp_site.stop()
            self._tcp_site = None
            logger.debug("TCP site stopped")

        if self._app_runner:
            await self._app_runner.cleanup()
            self._app_runner = None
            logger.debug("App runner cleaned up")

        if self._app:
            await self._app.shutdown()
            self._app = None

    async def close(self) -> None:
        """Close every session, then stop the server."""
        sessions = self._registry.sessions
        if sessions:
            results = await asyncio.gather(
                *(session.close("server shutdown") for session in sessions),
                return_exceptions=True,
            )
            for session, result in zip(sessions, results, strict=True):
                if isinstance(result, Exception):
                    logger.warning("Error closing session %s: %s", session.session_id, result)

        await self._registry.stop()
        await self.stop_server()

    async def _start_mdns_advertising(self, addresses: list[str], port: int) -> None:
        """Start advertising this relay via mDNS."""
        host = self._config.host
        self._zc = AsyncZeroconf(
            ip_version=IPVersion.V4Only,
            interfaces=[host] if host != "0.0.0.0" else InterfaceChoice.Default,
        )
        properties = {"path": self._config.ingest_path, "live": self.LIVE_PATH}
        info = AsyncServiceInfo(
            type_=MDNS_SERVICE_TYPE,
            name=f"{self._name}.{MDNS_SERVICE_TYPE}",
            server=f"{self._name}.local.",
            parsed_addresses=addresses,
            port=port,
            properties=properties,
        )
        try:
            await self._zc.async_register_service(info)
            self._mdns_service = info
            logger.debug("mDNS advertising relay on port %d", port)
        except NonUniqueNameException:
            logger.error("Relay with identical name present in the local network!")

    async def _stop_mdns(self) -> None:
        """Stop mDNS advertising if active."""
        if self._zc is None:
            return
        try:
            if self._mdns_service is not None:
                await self._zc.async_unregister_service(self._mdns_service)
        finally:
            await self._zc.async_close()
            self._zc = None
            self._mdns_service = None
