"""
Status messages served by the relay.

These models back the machine-readable ``/stats`` endpoint. Counters are
per-interval unless their name says otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import LegKind, SessionState, SourceFormat


@dataclass
class SessionInfo(DataClassORJSONMixin):
    """Summary of one active ingest session."""

    session_id: str
    """Identifier generated when the session was admitted."""
    source_format: SourceFormat
    """Format the ingest client declared."""
    state: SessionState
    """Current lifecycle state."""
    legs: list[LegKind] = field(default_factory=list)
    """Legs whose subprocess is running."""
    failed_legs: list[LegKind] = field(default_factory=list)
    """Legs that could not be started for this session."""
    live_consumers: int = 0
    """Pull clients attached to this session's live stream."""
    bytes_received: int = 0
    """Total ingest bytes accepted by this session."""
    remote: str | None = None
    """Peer address of the ingest connection (optional)."""

    class Config(BaseConfig):
        """Config for serializing json messages."""

        omit_none = True


@dataclass
class StatsSnapshot(DataClassORJSONMixin):
    """Process-wide counters for the current stats interval."""

    ingest_bytes: int = 0
    """Bytes received from ingest connections."""
    fanout_bytes: int = 0
    """Bytes read from live Ogg encoders."""
    network_bytes: int = 0
    """Bytes written to live RTP encoders."""
    file_bytes: int = 0
    """Bytes written to recording encoders."""
    dropped_chunks: int = 0
    """Ingest chunks dropped because they exceeded the size cap."""
    total_ingest_bytes: int = 0
    """Bytes received since the relay started."""
    active_sessions: int = 0
    """Number of sessions currently open."""
    live_consumers: int = 0
    """Number of pull clients across every session."""
    interval_s: float = 1.0
    """Length of the counter interval in seconds."""
    sessions: list[SessionInfo] = field(default_factory=list)
    """Per-session summaries."""
