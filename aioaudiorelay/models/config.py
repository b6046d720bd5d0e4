"""
Configuration for the audio relay.

Values come from, in increasing priority: field defaults, an optional JSON file
(``RelayConfig.from_json``), the process environment (``RelayConfig.from_env``)
and finally explicit overrides passed by the command line.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import BackpressurePolicy, OutputMode, SourceFormat

MIB = 1024 * 1024

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


def _parse_optional_str(value: str) -> str | None:
    return value or None


# Environment variable -> (field name, parser)
_ENV_FIELDS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "HOST": ("host", str),
    "PORT": ("port", int),
    "WS_PATH": ("ingest_path", str),
    "AUTH_TOKEN": ("auth_token", _parse_optional_str),
    "INPUT_FORMAT": ("input_format", SourceFormat),
    "OUTPUT_MODE": ("output_mode", OutputMode),
    "OUTPUT_PATH": ("output_path", str),
    "SAMPLE_RATE": ("sample_rate", int),
    "CHANNELS": ("channels", int),
    "RTP_URL": ("rtp_url", _parse_optional_str),
    "LIVE_FANOUT": ("live_fanout", _parse_bool),
    "FFMPEG_BINARY": ("ffmpeg_binary", str),
    "BITRATE": ("bitrate", str),
    "RTP_REALTIME": ("network_realtime", _parse_bool),
    "RTP_PACKET_LOSS": ("packet_loss_percent", int),
    "BACKPRESSURE": ("backpressure", BackpressurePolicy),
    "MAX_INPUT_BUFFER": ("max_input_buffer_bytes", int),
    "MAX_BACKLOG": ("max_backlog_bytes", int),
    "MAX_CHUNK_BYTES": ("max_chunk_bytes", int),
    "HEARTBEAT_INTERVAL": ("heartbeat_interval", float),
    "TERMINATE_GRACE": ("terminate_grace", float),
    "LEG_STARTUP_GRACE": ("leg_startup_grace", float),
    "STATS_INTERVAL": ("stats_interval", float),
    "CONSUMER_QUEUE_SIZE": ("consumer_queue_size", int),
    "MDNS_ADVERTISE": ("advertise_mdns", _parse_bool),
}


@dataclass
class RelayConfig(DataClassORJSONMixin):
    """Settings for one relay process."""

    host: str = "0.0.0.0"
    """Address the HTTP server binds to."""
    port: int = 8000
    """TCP port of the HTTP server."""
    ingest_path: str = "/ingest"
    """Path of the WebSocket ingest endpoint."""
    auth_token: str | None = None
    """Bearer token required from ingest clients. No check when unset."""
    input_format: SourceFormat = SourceFormat.WEBM
    """Source format assumed when the client does not pass ``?format=``."""
    output_mode: OutputMode = OutputMode.FILE
    """Whether sessions are recorded unless the client overrides it."""
    output_path: str = "./data/out"
    """Directory receiving ``record-<session>.ogg`` files."""
    sample_rate: int = 48000
    """Sample rate for raw PCM and Opus input in Hz."""
    channels: int = 1
    """Channel count for input decoding and for every encoder (1 or 2)."""
    rtp_url: str | None = "rtp://127.0.0.1:5004"
    """Target of the live RTP leg. ``None`` disables the leg."""
    live_fanout: bool = True
    """Run the live Ogg leg that feeds HTTP pull clients."""
    ffmpeg_binary: str = "ffmpeg"
    """Transcoding engine executable."""
    bitrate: str = "96k"
    """Opus bitrate shared by every encoder."""
    network_realtime: bool = True
    """Pass ``-re`` to the RTP encoder so packets leave at the real-time rate."""
    packet_loss_percent: int = 0
    """Expected RTP packet loss. A positive value enables Opus in-band FEC."""
    backpressure: BackpressurePolicy = BackpressurePolicy.DROP
    """Behaviour of a leg whose stdin pipe is saturated."""
    max_input_buffer_bytes: int = MIB
    """Pending bytes in a leg's stdin pipe above which it counts as saturated."""
    max_backlog_bytes: int = 4 * MIB
    """Upper bound of the backlog held by a suspended leg."""
    max_chunk_bytes: int = MIB
    """Ingest chunks larger than this are dropped."""
    heartbeat_interval: float = 30.0
    """Seconds between WebSocket liveness pings."""
    terminate_grace: float = 2.0
    """Seconds between SIGTERM and SIGKILL when stopping a leg."""
    leg_startup_grace: float = 1.0
    """A leg exiting this soon after spawn, or before it was fed, counts as failed to start."""
    stats_interval: float = 1.0
    """Seconds between stats log lines and counter resets."""
    consumer_queue_size: int = 256
    """Chunks queued per pull client before it is considered too slow."""
    advertise_mdns: bool = False
    """Advertise the relay via mDNS."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.channels not in (1, 2):
            raise ValueError(f"channels must be 1 or 2, got {self.channels}")
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be in range 1..65535, got {self.port}")
        if not self.ingest_path.startswith("/"):
            raise ValueError(f"ingest_path must start with '/', got {self.ingest_path!r}")
        if not 0 <= self.packet_loss_percent <= 100:
            raise ValueError(
                f"packet_loss_percent must be in range 0..100, got {self.packet_loss_percent}"
            )
        for name in ("heartbeat_interval", "terminate_grace", "stats_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.leg_startup_grace < 0:
            raise ValueError(
                f"leg_startup_grace must not be negative, got {self.leg_startup_grace}"
            )
        for name in (
            "max_input_buffer_bytes",
            "max_backlog_bytes",
            "max_chunk_bytes",
            "consumer_queue_size",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, *, base: RelayConfig | None = None
    ) -> RelayConfig:
        """
        Build a config from environment variables.

        Args:
            environ: Mapping to read from, defaults to ``os.environ``.
            base: Config whose values are kept for unset variables.

        Raises:
            ValueError: If a variable cannot be parsed or a value is out of range.
        """
        if environ is None:
            environ = os.environ
        overrides: dict[str, Any] = {}
        for env_name, (field_name, parser) in _ENV_FIELDS.items():
            raw = environ.get(env_name)
            if raw is None:
                continue
            try:
                overrides[field_name] = parser(raw)
            except ValueError as err:
                raise ValueError(f"invalid value for {env_name}: {err}") from err
        return (base or cls()).with_overrides(**overrides)

    def with_overrides(self, **overrides: Any) -> RelayConfig:
        """Return a validated copy with the given fields replaced."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"unknown config fields: {', '.join(sorted(unknown))}")
        return replace(self, **overrides)
