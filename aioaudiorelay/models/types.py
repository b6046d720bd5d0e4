"""Models for enum types used by the audio relay."""

from enum import Enum


class SourceFormat(Enum):
    """Format of the audio bytes sent by an ingest client."""

    PCM = "pcm"
    """Raw signed 16-bit little-endian PCM at the configured rate and channel count."""
    WEBM = "webm"
    """Chunked WebM as produced by a browser MediaRecorder."""
    OGG = "ogg"
    """Ogg container stream."""
    OPUS = "opus"
    """Raw Opus stream."""

    @property
    def requires_normalization(self) -> bool:
        """True if chunks must pass through the WebM normalizer before reaching ffmpeg."""
        return self is SourceFormat.WEBM


class OutputMode(Enum):
    """Whether a session persists its audio to disk."""

    FILE = "file"
    """Record every session to an Ogg/Opus file."""
    NONE = "none"
    """Do not persist anything."""


class LegKind(Enum):
    """The three transcoding legs a session may run."""

    DURABLE_FILE = "file"
    """Encodes into the per-session recording file."""
    LIVE_FANOUT = "live-ogg"
    """Encodes into Ogg/Opus on stdout for HTTP pull clients."""
    LIVE_NETWORK = "live-rtp"
    """Encodes into Opus over RTP towards the configured UDP target."""


class BackpressurePolicy(Enum):
    """What a leg does with new chunks while its input pipe is saturated."""

    DROP = "drop"
    """Drop the chunk for the saturated leg only."""
    SUSPEND = "suspend"
    """Hold chunks in an ordered backlog until the pipe drains."""


class SessionState(Enum):
    """Lifecycle states of an ingest session."""

    ADMITTED = "admitted"
    PIPED = "piped"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"
