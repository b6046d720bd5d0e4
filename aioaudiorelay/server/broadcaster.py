"""
Live fan-out of an encoder's output to pull-style consumers.

The live Ogg encoder emits its stream headers (``OpusHead`` and ``OpusTags``
pages) once, at the very start of its output. Consumers that join later would
never see them, so the first bytes of the stream are kept in a ``HeaderCache``
and replayed to every new consumer before it starts receiving live pages.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)

OPUS_HEAD_MARKER = b"OpusHead"
OPUS_TAGS_MARKER = b"OpusTags"


class HeaderCache:
    """Accumulates the start of an Ogg/Opus stream until both header pages were seen."""

    def __init__(
        self,
        head_marker: bytes = OPUS_HEAD_MARKER,
        tags_marker: bytes = OPUS_TAGS_MARKER,
    ) -> None:
        """Initialize an empty cache looking for the two given markers."""
        self._head_marker = head_marker
        self._tags_marker = tags_marker
        self._buffer = bytearray()
        self._has_head = False
        self._has_tags = False

    def observe(self, chunk: bytes) -> None:
        """
        Append a chunk of encoder output while a marker is still missing.

        Markers are searched in the whole accumulated buffer, so a marker split
        over two chunks is found once its second half arrives.
        """
        if self._has_head and self._has_tags:
            return
        self._buffer += chunk
        if not self._has_head and self._head_marker in self._buffer:
            self._has_head = True
        if not self._has_tags and self._tags_marker in self._buffer:
            self._has_tags = True
        if self.has_both_markers():
            logger.debug("Header cache complete (%d bytes)", len(self._buffer))

    def current_contents(self) -> bytes:
        """Return the cached bytes to replay to a new consumer."""
        return bytes(self._buffer)

    def has_both_markers(self) -> bool:
        """True once both header markers were observed."""
        return self._has_head and self._has_tags

    @property
    def has_opus_head(self) -> bool:
        """True once the identification header marker was observed."""
        return self._has_head

    @property
    def has_opus_tags(self) -> bool:
        """True once the comment header marker was observed."""
        return self._has_tags

    @property
    def size(self) -> int:
        """Number of cached bytes."""
        return len(self._buffer)


class Consumer(Protocol):
    """A pull-style subscriber of a live stream."""

    @property
    def writable(self) -> bool:
        """False once the consumer is closed or failed."""
        ...

    def write(self, data: bytes) -> bool:
        """Queue data without blocking. Returns False if the data could not be accepted."""
        ...

    def close(self) -> None:
        """Close the consumer. Must be safe to call more than once."""
        ...


class FanoutBroadcaster:
    """
    Delivers one live byte stream to a changing set of consumers.

    The consumer set is only ever mutated by this class. Every consumer receives
    chunks in the order ``publish`` is called; a consumer that cannot keep up
    is evicted without affecting the others.
    """

    _consumers: set[Consumer]
    _header_cache: HeaderCache
    _closed: bool

    def __init__(self, header_cache: HeaderCache | None = None, *, name: str = "live") -> None:
        """
        Initialize the broadcaster.

        Args:
            header_cache: Cache replayed to new consumers, a fresh one if omitted.
            name: Label used in log messages.
        """
        self._consumers = set()
        self._header_cache = header_cache if header_cache is not None else HeaderCache()
        self._closed = False
        self._logger = logger.getChild(name)

    @property
    def header_cache(self) -> HeaderCache:
        """Cache of the stream headers."""
        return self._header_cache

    @property
    def consumers(self) -> frozenset[Consumer]:
        """Snapshot of the current consumers."""
        return frozenset(self._consumers)

    @property
    def closed(self) -> bool:
        """Whether the broadcaster has been closed."""
        return self._closed

    def __len__(self) -> int:
        """Return the number of current consumers."""
        return len(self._consumers)

    def subscribe(self, consumer: Consumer) -> bool:
        """
        Replay the cached headers to a consumer and admit it to the live set.

        The replay happens before admission, so a consumer that is already
        closed or too slow to take the headers is closed and never added.

        Returns:
            True if the consumer was admitted.
        """
        if self._closed or not consumer.writable:
            consumer.close()
            return False
        headers = self._header_cache.current_contents()
        if headers and not consumer.write(headers):
            self._logger.debug("Consumer failed header replay, not admitting it")
            consumer.close()
            return False
        self._consumers.add(consumer)
        self._logger.info("Live consumer connected, total: %d", len(self._consumers))
        return True

    def unsubscribe(self, consumer: Consumer) -> None:
        """Remove a consumer, closing it. Unknown consumers are ignored."""
        if consumer in self._consumers:
            self._consumers.discard(consumer)
            self._logger.info("Live consumer disconnected, total: %d", len(self._consumers))
        consumer.close()

    def publish(self, chunk: bytes) -> None:
        """Deliver a chunk to every consumer, evicting the ones that fail."""
        for consumer in list(self._consumers):
            if consumer.writable and consumer.write(chunk):
                continue
            self._logger.debug("Evicting consumer that could not keep up")
            self._consumers.discard(consumer)
            consumer.close()

    def feed(self, chunk: bytes) -> None:
        """Handle a chunk of encoder output: cache headers, then publish."""
        self._header_cache.observe(chunk)
        self.publish(chunk)

    def close(self) -> None:
        """Evict every consumer and refuse new ones."""
        self._closed = True
        consumers = list(self._consumers)
        self._consumers.clear()
        for consumer in consumers:
            consumer.close()
        if consumers:
            self._logger.info("Closed %d live consumer(s)", len(consumers))
