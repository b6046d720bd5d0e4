"""Public interface for the relay server package."""

from .broadcaster import Consumer, FanoutBroadcaster, HeaderCache
from .consumer import HttpStreamConsumer
from .normalizer import WebmNormalizer
from .pipeline import (
    PipelineManager,
    SpawnError,
    SubprocessEvent,
    SubprocessExitEvent,
    SubprocessHandle,
    SubprocessOutputEvent,
    build_command,
)
from .registry import RelayStats, SessionRegistry
from .sdp import build_opus_sdp
from .server import (
    CLOSE_UNAUTHORIZED,
    CLOSE_UNSUPPORTED_FORMAT,
    RelayEvent,
    RelayServer,
    SessionAddedEvent,
    SessionRemovedEvent,
)
from .session import RelaySession

__all__ = [
    "CLOSE_UNAUTHORIZED",
    "CLOSE_UNSUPPORTED_FORMAT",
    "Consumer",
    "FanoutBroadcaster",
    "HeaderCache",
    "HttpStreamConsumer",
    "PipelineManager",
    "RelayEvent",
    "RelayServer",
    "RelaySession",
    "RelayStats",
    "SessionAddedEvent",
    "SessionRegistry",
    "SessionRemovedEvent",
    "SpawnError",
    "SubprocessEvent",
    "SubprocessExitEvent",
    "SubprocessHandle",
    "SubprocessOutputEvent",
    "WebmNormalizer",
    "build_command",
    "build_opus_sdp",
]
