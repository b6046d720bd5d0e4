"""Re-segment chunked WebM into one continuous bitstream for ffmpeg."""

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

EBML_MARKER = b"\x1a\x45\xdf\xa3"
"""EBML element ID, the first bytes of every WebM header block."""
CLUSTER_MARKER = b"\x1f\x43\xb6\x75"
"""Cluster element ID, the start of a media segment."""
MAX_PENDING_BYTES = 1024 * 1024


class WebmNormalizer:
    """
    Strip repeated WebM headers from a chunked stream.

    Some recorders restart the container in every chunk, prefixing each one with
    a full EBML header. ffmpeg reads stdin as a single stream, so only the first
    header may reach it: later header blocks are cut down to the Cluster that
    follows them. Header blocks whose Cluster has not arrived yet are held back
    until it does.
    """

    def __init__(
        self,
        write: Callable[[bytes], None],
        *,
        max_pending: int = MAX_PENDING_BYTES,
    ) -> None:
        """
        Initialize the normalizer.

        Args:
            write: Called with every piece of data to forward downstream.
            max_pending: Size above which a held header block is discarded.
        """
        self._write = write
        self._max_pending = max_pending
        self._header_sent = False
        self._pending: bytes | None = None

    @property
    def header_sent(self) -> bool:
        """True once the first chunk has been forwarded."""
        return self._header_sent

    @property
    def pending(self) -> bytes | None:
        """Header block held while waiting for its Cluster, if any."""
        return self._pending

    def push(self, chunk: bytes) -> None:
        """Process one ingest chunk, forwarding zero or one piece of data."""
        if not self._header_sent:
            self._header_sent = True
            self._write(chunk)
            return

        buffer = self._pending + chunk if self._pending is not None else chunk
        if not buffer.startswith(EBML_MARKER):
            # Plain continuation data
            self._write(chunk)
            return

        offset = buffer.find(CLUSTER_MARKER)
        if offset != -1:
            self._pending = None
            self._write(buffer[offset:])
            return

        if len(buffer) > self._max_pending:
            logger.warning(
                "Dropping %d bytes of WebM header data without a cluster", len(buffer)
            )
            self._pending = None
            return
        self._pending = bytes(buffer)
