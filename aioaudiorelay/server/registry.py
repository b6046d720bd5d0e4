"""Process-wide counters and the registry of active sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from aioaudiorelay.models import SessionState, StatsSnapshot

if TYPE_CHECKING:
    from .session import RelaySession

logger = logging.getLogger(__name__)


@dataclass
class RelayStats:
    """Byte counters shared by every session, reset every stats interval."""

    ingest_bytes: int = 0
    """Bytes received from ingest connections."""
    fanout_bytes: int = 0
    """Bytes read from live Ogg encoders."""
    network_bytes: int = 0
    """Bytes written to live RTP encoders."""
    file_bytes: int = 0
    """Bytes written to recording encoders."""
    dropped_chunks: int = 0
    """Oversized ingest chunks that were dropped."""
    total_ingest_bytes: int = 0
    """Bytes received since start, never reset."""

    def add_ingest(self, count: int) -> None:
        """Account for bytes received from an ingest client."""
        self.ingest_bytes += count
        self.total_ingest_bytes += count

    def reset_interval(self) -> None:
        """Zero the per-interval counters."""
        self.ingest_bytes = 0
        self.fanout_bytes = 0
        self.network_bytes = 0
        self.file_bytes = 0
        self.dropped_chunks = 0


class SessionRegistry:
    """
    Owns the relay's shared state: the counters and the set of active sessions.

    Created when the server starts and stopped when it closes. Sessions get a
    reference to it instead of reaching for module globals.
    """

    _sessions: dict[str, RelaySession]
    """Active sessions in admission order."""
    _ticker_task: asyncio.Task[None] | None

    def __init__(self, *, stats_interval: float = 1.0) -> None:
        """Initialize an empty registry that resets counters every ``stats_interval`` s."""
        self._sessions = {}
        self._stats = RelayStats()
        self._stats_interval = stats_interval
        self._ticker_task = None

    @property
    def stats(self) -> RelayStats:
        """Shared counters."""
        return self._stats

    @property
    def sessions(self) -> list[RelaySession]:
        """Active sessions, oldest first."""
        return list(self._sessions.values())

    def add(self, session: RelaySession) -> None:
        """Register an admitted session."""
        self._sessions[session.session_id] = session
        logger.debug("Registered session %s (%d active)", session.session_id, len(self._sessions))

    def remove(self, session: RelaySession) -> None:
        """Unregister a session. Unknown sessions are ignored."""
        if self._sessions.pop(session.session_id, None) is not None:
            logger.debug(
                "Unregistered session %s (%d active)", session.session_id, len(self._sessions)
            )

    def get(self, session_id: str) -> RelaySession | None:
        """Get the active session with the given id."""
        return self._sessions.get(session_id)

    def latest_live_session(self) -> RelaySession | None:
        """Return the most recently admitted session that serves a live Ogg stream."""
        for session in reversed(self._sessions.values()):
            broadcaster = session.broadcaster
            if broadcaster is not None and not broadcaster.closed:
                return session
        return None

    @property
    def live_consumers(self) -> int:
        """Number of pull clients across every session."""
        return sum(
            len(session.broadcaster)
            for session in self._sessions.values()
            if session.broadcaster is not None
        )

    def snapshot(self) -> StatsSnapshot:
        """Return the counters of the current interval together with session summaries."""
        stats = self._stats
        infos = [session.info() for session in self._sessions.values()]
        return StatsSnapshot(
            ingest_bytes=stats.ingest_bytes,
            fanout_bytes=stats.fanout_bytes,
            network_bytes=stats.network_bytes,
            file_bytes=stats.file_bytes,
            dropped_chunks=stats.dropped_chunks,
            total_ingest_bytes=stats.total_ingest_bytes,
            active_sessions=sum(1 for info in infos if info.state != SessionState.CLOSED),
            live_consumers=self.live_consumers,
            interval_s=self._stats_interval,
            sessions=infos,
        )

    def start(self) -> None:
        """Start the periodic stats log and reset."""
        if self._ticker_task is not None:
            return
        self._ticker_task = asyncio.get_running_loop().create_task(self._run_ticker())

    async def stop(self) -> None:
        """Stop the ticker and forget every session."""
        if self._ticker_task is not None:
            self._ticker_task.cancel()
            try:
                await self._ticker_task
            except asyncio.CancelledError:
                pass
            self._ticker_task = None
        self._sessions.clear()

    def tick(self) -> None:
        """Log the counters of the finished interval and reset them."""
        stats = self._stats
        if stats.ingest_bytes or stats.network_bytes or stats.fanout_bytes or self._sessions:
            logger.info(
                "[stats/%.0fs] ws->in: %.1fKB  toRTP: %.1fKB  toOGG: %.1fKB  toFile: %.1fKB  "
                "sessions: %d  listeners: %d",
                self._stats_interval,
                stats.ingest_bytes / 1024,
                stats.network_bytes / 1024,
                stats.fanout_bytes / 1024,
                stats.file_bytes / 1024,
                len(self._sessions),
                self.live_consumers,
            )
        stats.reset_interval()

    async def _run_ticker(self) -> None:
        while True:
            await asyncio.sleep(self._stats_interval)
            try:
                self.tick()
            except Exception:
                logger.exception("Error in stats ticker")
