"""
Transcoding subprocesses owned by ingest sessions.

Every session runs up to three ffmpeg processes ("legs"), all reading the same
ingest audio from stdin:

- ``file``: encodes Ogg/Opus into the session's recording file.
- ``live-ogg``: encodes Ogg/Opus with short pages onto stdout for pull clients.
- ``live-rtp``: encodes Opus with short frames and sends it over RTP.

ffmpeg is treated as an opaque byte-in/byte-out process: this module only builds
its argument list, feeds stdin, reads stdout and stops it again.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from aioaudiorelay.models import BackpressurePolicy, LegKind, RelayConfig, SourceFormat

logger = logging.getLogger(__name__)

OUTPUT_READ_SIZE = 64 * 1024
DEFAULT_TERMINATE_GRACE = 2.0

RTP_PAYLOAD_TYPE = 97
RTP_PACKET_SIZE = 1200
RTP_FRAME_DURATION_MS = 10
OGG_PAGE_DURATION_US = 20000

# Decoder options must precede "-i" to apply to the pipe input
LOW_LATENCY_INPUT_ARGS = [
    "-fflags",
    "+nobuffer",
    "-flags",
    "low_delay",
    "-use_wallclock_as_timestamps",
    "1",
]
LOW_LATENCY_OUTPUT_ARGS = ["-flush_packets", "1"]


class SpawnError(Exception):
    """A transcoding leg could not be started."""

    def __init__(self, kind: LegKind, message: str) -> None:
        """Initialize with the leg that failed and a human-readable reason."""
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind


class SubprocessEvent:
    """Base event type used by SubprocessHandle.add_event_listener()."""


@dataclass
class SubprocessOutputEvent(SubprocessEvent):
    """The subprocess wrote bytes to stdout."""

    data: bytes


@dataclass
class SubprocessExitEvent(SubprocessEvent):
    """The subprocess exited. Sent once, after all output events."""

    returncode: int | None


def input_args(source_format: SourceFormat, config: RelayConfig) -> list[str]:
    """Return the ffmpeg arguments describing the stdin input."""
    if source_format is SourceFormat.PCM:
        return [
            "-f",
            "s16le",
            "-ar",
            str(config.sample_rate),
            "-ac",
            str(config.channels),
            *LOW_LATENCY_INPUT_ARGS,
            "-i",
            "pipe:0",
        ]
    if source_format is SourceFormat.OPUS:
        return [
            "-f",
            "opus",
            "-ar",
            str(config.sample_rate),
            "-ac",
            str(config.channels),
            *LOW_LATENCY_INPUT_ARGS,
            "-i",
            "pipe:0",
        ]
    # ogg and webm are self-describing containers
    return ["-f", source_format.value, *LOW_LATENCY_INPUT_ARGS, "-i", "pipe:0"]


def _encode_args(config: RelayConfig) -> list[str]:
    return [
        "-ac",
        str(config.channels),
        "-c:a",
        "libopus",
        "-b:a",
        config.bitrate,
        *LOW_LATENCY_OUTPUT_ARGS,
    ]


def recording_path(config: RelayConfig, session_id: str) -> Path:
    """Return the path of the recording file of a session."""
    return Path(config.output_path) / f"record-{session_id}.ogg"


def rtp_target(url: str) -> str:
    """Append the packet size limit to an RTP URL."""
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}pkt_size={RTP_PACKET_SIZE}"


def build_command(
    kind: LegKind,
    source_format: SourceFormat,
    config: RelayConfig,
    *,
    session_id: str | None = None,
    target: str | None = None,
) -> list[str]:
    """
    Build the ffmpeg command line of a leg.

    Args:
        kind: Which leg to build.
        source_format: Format of the ingest audio written to stdin.
        config: Relay settings (binary, sample rate, channels, bitrate, ...).
        session_id: Required for the file leg, names the recording.
        target: RTP URL for the network leg, defaults to ``config.rtp_url``.

    Raises:
        ValueError: If the file leg has no session id or the network leg no target.
    """
    cmd = [config.ffmpeg_binary, "-hide_banner", "-loglevel", "warning"]

    if kind is LegKind.DURABLE_FILE:
        if not session_id:
            raise ValueError("the file leg needs a session id")
        return [
            *cmd,
            *input_args(source_format, config),
            *_encode_args(config),
            "-f",
            "ogg",
            str(recording_path(config, session_id)),
        ]

    if kind is LegKind.LIVE_FANOUT:
        return [
            *cmd,
            *input_args(source_format, config),
            *_encode_args(config),
            "-page_duration",
            str(OGG_PAGE_DURATION_US),
            "-f",
            "ogg",
            "pipe:1",
        ]

    url = target or config.rtp_url
    if not url:
        raise ValueError("the network leg needs an RTP target")
    if config.network_realtime:
        # Read input at native rate, avoids "packet received too late" on players
        cmd.append("-re")
    cmd.extend(input_args(source_format, config))
    cmd.extend(_encode_args(config))
    cmd.extend(["-frame_duration", str(RTP_FRAME_DURATION_MS)])
    if config.packet_loss_percent > 0:
        cmd.extend(["-fec", "1", "-packet_loss", str(config.packet_loss_percent)])
    cmd.extend(["-f", "rtp", "-payload_type", str(RTP_PAYLOAD_TYPE), rtp_target(url)])
    return cmd


class SubprocessHandle:
    """
    One running transcoding leg.

    Writes never block and never raise: once the input is closed, or the process
    has exited, ``write`` is a no-op returning False.
    """

    kind: LegKind
    _process: asyncio.subprocess.Process
    _loop: asyncio.AbstractEventLoop
    _event_cbs: list[Callable[[SubprocessHandle, SubprocessEvent], None]]
    _input_open: bool
    _policy: BackpressurePolicy
    _high_water: int
    _backlog: deque[bytes]
    """Chunks held while the leg is suspended, in arrival order."""
    _backlog_limit: int
    _backlog_bytes: int
    _suspended: bool
    _drain_task: asyncio.Task[None] | None
    _output_task: asyncio.Task[None] | None
    _stderr_task: asyncio.Task[None] | None
    _exit_task: asyncio.Task[None]
    _terminate_task: asyncio.Task[int | None] | None
    bytes_written: int
    """Bytes accepted into the stdin pipe."""
    dropped_chunks: int
    """Chunks discarded because the stdin pipe was saturated."""

    def __init__(
        self,
        kind: LegKind,
        process: asyncio.subprocess.Process,
        *,
        loop: asyncio.AbstractEventLoop,
        policy: BackpressurePolicy = BackpressurePolicy.DROP,
        high_water: int = 1024 * 1024,
        backlog_limit: int = 4 * 1024 * 1024,
        parent_logger: logging.Logger | None = None,
    ) -> None:
        """
        Wrap a started process. Use PipelineManager.spawn() instead of calling this.

        Args:
            kind: Leg this process implements.
            process: Process started with a stdin pipe.
            loop: Event loop running the reader tasks.
            policy: What to do with chunks while stdin is saturated.
            high_water: Pending stdin bytes above which the pipe counts as saturated.
            backlog_limit: Maximum bytes held while suspended.
            parent_logger: Logger to derive this leg's logger from.
        """
        self.kind = kind
        self._process = process
        self._loop = loop
        self._logger = (parent_logger or logger).getChild(kind.value)
        self._event_cbs = []
        self._input_open = process.stdin is not None
        self._policy = policy
        self._high_water = high_water
        self._backlog = deque()
        self._backlog_limit = backlog_limit
        self._backlog_bytes = 0
        self._suspended = False
        self._drain_task = None
        self._terminate_task = None
        self.bytes_written = 0
        self.dropped_chunks = 0
        self._output_task = (
            loop.create_task(self._read_output()) if process.stdout is not None else None
        )
        self._stderr_task = (
            loop.create_task(self._log_stderr()) if process.stderr is not None else None
        )
        self._exit_task = loop.create_task(self._watch_exit())

    @property
    def pid(self) -> int:
        """Process id of the leg."""
        return self._process.pid

    @property
    def input_open(self) -> bool:
        """Whether stdin may still be written."""
        return self._input_open

    @property
    def returncode(self) -> int | None:
        """Exit code, None while the process runs."""
        return self._process.returncode

    @property
    def suspended(self) -> bool:
        """True while forwarding is paused until stdin drains."""
        return self._suspended

    def add_event_listener(
        self, callback: Callable[[SubprocessHandle, SubprocessEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback for output and exit events of this leg.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: SubprocessEvent) -> None:
        for cb in list(self._event_cbs):
            try:
                cb(self, event)
            except Exception:
                self._logger.exception("Error in event listener")

    def _pending_input_bytes(self) -> int:
        stdin = self._process.stdin
        assert stdin is not None
        return stdin.transport.get_write_buffer_size()

    def write(self, data: bytes) -> bool:
        """
        Forward a chunk to the leg's stdin without blocking.

        Returns:
            True if the chunk was written or queued, False if it was dropped or
            the input is closed.
        """
        if not self._input_open:
            return False
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            self._input_open = False
            return False
        if self._suspended:
            return self._hold(data)
        if self._pending_input_bytes() + len(data) > self._high_water:
            if self._policy is BackpressurePolicy.DROP:
                self.dropped_chunks += 1
                self._logger.debug("stdin saturated, dropping %d byte chunk", len(data))
                return False
            self._suspend()
            return self._hold(data)
        try:
            stdin.write(data)
        except (ConnectionError, RuntimeError) as err:
            self._logger.debug("stdin write failed: %s", err)
            self._input_open = False
            return False
        self.bytes_written += len(data)
        return True

    def _hold(self, data: bytes) -> bool:
        if self._backlog_bytes + len(data) > self._backlog_limit:
            self.dropped_chunks += 1
            self._logger.debug("Backlog full, dropping %d byte chunk", len(data))
            return False
        self._backlog.append(data)
        self._backlog_bytes += len(data)
        return True

    def _suspend(self) -> None:
        self._logger.debug("stdin saturated, suspending forwarding")
        self._suspended = True
        self._drain_task = self._loop.create_task(self._drain_backlog())

    async def _drain_backlog(self) -> None:
        """Wait for stdin to drain, then flush the backlog in order and resume."""
        stdin = self._process.stdin
        assert stdin is not None
        try:
            while self._backlog and self._input_open:
                await stdin.drain()
                chunk = self._backlog.popleft()
                self._backlog_bytes -= len(chunk)
                stdin.write(chunk)
                self.bytes_written += len(chunk)
            self._logger.debug("stdin drained, resuming forwarding")
        except (ConnectionError, RuntimeError) as err:
            self._logger.debug("stdin closed while draining: %s", err)
            self._input_open = False
        finally:
            self._suspended = False
            self._drain_task = None

    def close_input(self) -> None:
        """Signal end of input to the leg. Safe to call more than once."""
        if not self._input_open:
            return
        self._input_open = False
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        self._backlog.clear()
        self._backlog_bytes = 0
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    async def _read_output(self) -> None:
        stdout = self._process.stdout
        assert stdout is not None
        try:
            while data := await stdout.read(OUTPUT_READ_SIZE):
                self._signal_event(SubprocessOutputEvent(data))
        except Exception:
            self._logger.exception("Error reading leg output")

    async def _log_stderr(self) -> None:
        stderr = self._process.stderr
        assert stderr is not None
        async for line in stderr:
            text = line.decode(errors="replace").rstrip()
            if text:
                self._logger.warning("%s", text)

    async def _watch_exit(self) -> None:
        returncode = await self._process.wait()
        self._input_open = False
        if self._output_task is not None:
            # Deliver every output byte before reporting the exit
            with suppress(asyncio.CancelledError):
                await self._output_task
        self._logger.info("Leg exited with code %s", returncode)
        self._signal_event(SubprocessExitEvent(returncode))

    async def terminate(self, grace: float = DEFAULT_TERMINATE_GRACE) -> int | None:
        """
        Stop the leg: close stdin, SIGTERM, then SIGKILL after ``grace`` seconds.

        Concurrent and repeated calls share one termination.

        Returns:
            The exit code of the process.
        """
        if self._terminate_task is None:
            self._terminate_task = self._loop.create_task(self._terminate(grace))
        return await asyncio.shield(self._terminate_task)

    async def _terminate(self, grace: float) -> int | None:
        self.close_input()
        if self._process.returncode is None:
            with suppress(ProcessLookupError):
                self._process.terminate()
            try:
                async with asyncio.timeout(grace):
                    await self._process.wait()
            except TimeoutError:
                self._logger.warning("Leg did not exit after SIGTERM; sending SIGKILL")
                with suppress(ProcessLookupError):
                    self._process.kill()
                await self._process.wait()

        done, _ = await asyncio.wait({self._exit_task}, timeout=grace)
        if not done:
            self._logger.warning("Leg output did not close after exit")
        for task in (self._output_task, self._stderr_task, self._exit_task):
            if task is not None and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        return self._process.returncode


class PipelineManager:
    """Starts transcoding legs with the argument profile of each kind."""

    def __init__(self, config: RelayConfig, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """
        Initialize the manager.

        Args:
            config: Relay settings used to build commands.
            loop: Event loop for the handles, the running loop if omitted.
        """
        self._config = config
        self._loop = loop

    @property
    def config(self) -> RelayConfig:
        """Relay settings used to build commands."""
        return self._config

    async def spawn(
        self,
        kind: LegKind,
        source_format: SourceFormat,
        *,
        session_id: str | None = None,
        target: str | None = None,
        parent_logger: logging.Logger | None = None,
    ) -> SubprocessHandle:
        """
        Start one leg for a session.

        Raises:
            SpawnError: If the command cannot be built or the process cannot start.
        """
        try:
            command = build_command(
                kind, source_format, self._config, session_id=session_id, target=target
            )
        except ValueError as err:
            raise SpawnError(kind, str(err)) from err
        if kind is LegKind.DURABLE_FILE:
            try:
                Path(self._config.output_path).mkdir(parents=True, exist_ok=True)
            except OSError as err:
                raise SpawnError(kind, f"cannot create output directory: {err}") from err
        return await self.launch(kind, command, parent_logger=parent_logger)

    async def launch(
        self,
        kind: LegKind,
        command: Sequence[str],
        *,
        parent_logger: logging.Logger | None = None,
    ) -> SubprocessHandle:
        """
        Start an arbitrary command as a leg of the given kind.

        Only the live Ogg leg gets a stdout pipe, the other legs produce no
        output worth reading.

        Raises:
            SpawnError: If the process cannot start.
        """
        log = parent_logger or logger
        log.debug("Launching %s leg: %s", kind.value, " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=(
                    asyncio.subprocess.PIPE
                    if kind is LegKind.LIVE_FANOUT
                    else asyncio.subprocess.DEVNULL
                ),
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as err:
            raise SpawnError(kind, f"cannot start {command[0]!r}: {err}") from err
        log.info("Started %s leg (pid %d)", kind.value, process.pid)
        return SubprocessHandle(
            kind,
            process,
            loop=self._loop or asyncio.get_running_loop(),
            policy=self._config.backpressure,
            high_water=self._config.max_input_buffer_bytes,
            backlog_limit=self._config.max_backlog_bytes,
            parent_logger=log,
        )
