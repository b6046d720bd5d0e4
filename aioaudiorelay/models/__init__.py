"""Models for the audio relay."""

from __future__ import annotations

__all__ = [
    "BackpressurePolicy",
    "LegKind",
    "OutputMode",
    "RelayConfig",
    "SessionInfo",
    "SessionState",
    "SourceFormat",
    "StatsSnapshot",
    "config",
    "stats",
    "types",
]

from . import config, stats, types
from .config import RelayConfig
from .stats import SessionInfo, StatsSnapshot
from .types import BackpressurePolicy, LegKind, OutputMode, SessionState, SourceFormat
