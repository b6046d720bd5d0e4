"""Fakes shared by the session and server tests."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from contextlib import suppress

import pytest

from aioaudiorelay.models import LegKind, SourceFormat
from aioaudiorelay.server.pipeline import (
    SpawnError,
    SubprocessEvent,
    SubprocessExitEvent,
    SubprocessOutputEvent,
)


class FakeHandle:
    """Stands in for SubprocessHandle without starting a process."""

    def __init__(self, kind: LegKind) -> None:
        self.kind = kind
        self.input_open = True
        self.returncode: int | None = None
        self.chunks: list[bytes] = []
        self.terminate_calls = 0
        self._event_cbs: list[Callable[[FakeHandle, SubprocessEvent], None]] = []

    @property
    def received(self) -> bytes:
        return b"".join(self.chunks)

    @property
    def listener_count(self) -> int:
        return len(self._event_cbs)

    def add_event_listener(
        self, callback: Callable[[FakeHandle, SubprocessEvent], None]
    ) -> Callable[[], None]:
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def write(self, data: bytes) -> bool:
        if not self.input_open:
            return False
        self.chunks.append(bytes(data))
        return True

    def close_input(self) -> None:
        self.input_open = False

    async def terminate(self, grace: float = 2.0) -> int | None:
        self.terminate_calls += 1
        self.input_open = False
        if self.returncode is None:
            self.returncode = -15
        return self.returncode

    def emit_output(self, data: bytes) -> None:
        for cb in list(self._event_cbs):
            cb(self, SubprocessOutputEvent(data))

    def emit_exit(self, returncode: int = 1) -> None:
        self.returncode = returncode
        self.input_open = False
        for cb in list(self._event_cbs):
            cb(self, SubprocessExitEvent(returncode))


class FakePipeline:
    """Stands in for PipelineManager, recording every spawned handle."""

    def __init__(self, fail: Iterable[LegKind] = ()) -> None:
        self.fail = set(fail)
        self.spawned: list[FakeHandle] = []
        self.handles: dict[LegKind, FakeHandle] = {}

    async def spawn(
        self,
        kind: LegKind,
        source_format: SourceFormat,
        *,
        session_id: str | None = None,
        target: str | None = None,
        parent_logger: logging.Logger | None = None,
    ) -> FakeHandle:
        if kind in self.fail:
            raise SpawnError(kind, "cannot start 'ffmpeg-missing'")
        handle = FakeHandle(kind)
        self.spawned.append(handle)
        self.handles[kind] = handle
        return handle


class RecordingConsumer:
    """Consumer collecting everything written to it."""

    def __init__(self, *, fail: bool = False) -> None:
        self.data = bytearray()
        self.fail = fail
        self.closed = False

    @property
    def writable(self) -> bool:
        return not self.closed

    def write(self, data: bytes) -> bool:
        if self.fail:
            return False
        self.data += data
        return True

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_pipeline() -> FakePipeline:
    return FakePipeline()
