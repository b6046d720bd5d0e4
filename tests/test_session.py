from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
from conftest import FakePipeline, RecordingConsumer

from aioaudiorelay.models import LegKind, OutputMode, RelayConfig, SessionState, SourceFormat
from aioaudiorelay.server.normalizer import CLUSTER_MARKER, EBML_MARKER
from aioaudiorelay.server.registry import SessionRegistry
from aioaudiorelay.server.session import RelaySession

ALL_LEGS = {LegKind.DURABLE_FILE, LegKind.LIVE_FANOUT, LegKind.LIVE_NETWORK}


def _make_session(
    pipeline: FakePipeline,
    tmp_path: Path,
    *,
    source_format: SourceFormat = SourceFormat.PCM,
    output_mode: OutputMode = OutputMode.FILE,
    **config: Any,
) -> tuple[RelaySession, SessionRegistry]:
    registry = SessionRegistry()
    session = RelaySession(
        registry=registry,
        pipeline=pipeline,  # type: ignore[arg-type]
        config=RelayConfig(output_path=str(tmp_path), **config),
        source_format=source_format,
        output_mode=output_mode,
    )
    return session, registry


@pytest.mark.asyncio
async def test_pcm_chunks_reach_every_leg_in_order(
    fake_pipeline: FakePipeline, tmp_path: Path
) -> None:
    session, registry = _make_session(fake_pipeline, tmp_path)
    await session.start()
    assert session.state is SessionState.PIPED
    assert set(session.legs) == ALL_LEGS
    assert session.normalizer is None

    chunks = [bytes([n]) * 1000 for n in (1, 2, 3)]
    for chunk in chunks:
        session.handle_chunk(chunk)

    assert session.state is SessionState.STREAMING
    for handle in fake_pipeline.spawned:
        assert handle.chunks == chunks
        assert len(handle.received) == 3000
    assert registry.stats.ingest_bytes == 3000
    assert registry.stats.file_bytes == 3000
    assert registry.stats.network_bytes == 3000
    assert session.bytes_received == 3000
    await session.close()


@pytest.mark.asyncio
async def test_network_spawn_failure_keeps_other_legs(tmp_path: Path) -> None:
    pipeline = FakePipeline(fail=[LegKind.LIVE_NETWORK])
    session, _ = _make_session(pipeline, tmp_path)
    await session.start()

    assert set(session.legs) == {LegKind.DURABLE_FILE, LegKind.LIVE_FANOUT}
    assert LegKind.LIVE_NETWORK in session.failed_legs
    assert session.state is SessionState.PIPED

    session.handle_chunk(b"abc")
    session.handle_chunk(b"def")
    for kind in (LegKind.DURABLE_FILE, LegKind.LIVE_FANOUT):
        assert pipeline.handles[kind].received == b"abcdef"

    info = session.info()
    assert info.failed_legs == [LegKind.LIVE_NETWORK]
    await session.close()


@pytest.mark.asyncio
async def test_repeated_close_terminates_each_leg_once(
    fake_pipeline: FakePipeline, tmp_path: Path
) -> None:
    session, registry = _make_session(fake_pipeline, tmp_path)
    await session.start()
    assert registry.get(session.session_id) is session

    await asyncio.gather(session.close("socket closed"), session.close("leg exited"))
    await session.close()

    assert session.state is SessionState.CLOSED
    for handle in fake_pipeline.spawned:
        assert handle.terminate_calls == 1
        assert not handle.input_open
        assert handle.listener_count == 0
    assert registry.get(session.session_id) is None
    assert session.broadcaster is not None
    assert session.broadcaster.closed


@pytest.mark.asyncio
async def test_leg_exit_closes_whole_session(
    fake_pipeline: FakePipeline, tmp_path: Path
) -> None:
    session, _ = _make_session(fake_pipeline, tmp_path, leg_startup_grace=0)
    await session.start()
    session.handle_chunk(b"audio")

    fake_pipeline.handles[LegKind.LIVE_NETWORK].emit_exit(1)
    async with asyncio.timeout(5):
        while session.state is not SessionState.CLOSED:
            await asyncio.sleep(0.01)

    for handle in fake_pipeline.spawned:
        assert handle.terminate_calls == 1
    session.handle_chunk(b"too late")
    assert all(handle.chunks == [b"audio"] for handle in fake_pipeline.spawned)


@pytest.mark.asyncio
async def test_leg_exiting_at_startup_keeps_other_legs(
    fake_pipeline: FakePipeline, tmp_path: Path
) -> None:
    session, _ = _make_session(fake_pipeline, tmp_path)
    await session.start()

    network = fake_pipeline.handles[LegKind.LIVE_NETWORK]
    network.emit_exit(1)
    await asyncio.sleep(0)

    assert session.state is SessionState.PIPED
    assert set(session.legs) == {LegKind.DURABLE_FILE, LegKind.LIVE_FANOUT}
    assert "code=1" in session.failed_legs[LegKind.LIVE_NETWORK]
    assert session.info().failed_legs == [LegKind.LIVE_NETWORK]

    chunks = [b"one", b"two", b"three"]
    for chunk in chunks:
        session.handle_chunk(chunk)
    assert fake_pipeline.handles[LegKind.DURABLE_FILE].chunks == chunks
    assert fake_pipeline.handles[LegKind.LIVE_FANOUT].chunks == chunks
    assert network.chunks == []

    await session.close()
    assert session.state is SessionState.CLOSED
    for handle in fake_pipeline.spawned:
        assert handle.terminate_calls == 1


@pytest.mark.asyncio
async def test_live_leg_exit_within_startup_grace_drops_broadcaster(
    fake_pipeline: FakePipeline, tmp_path: Path
) -> None:
    session, _ = _make_session(fake_pipeline, tmp_path, leg_startup_grace=60)
    await session.start()
    session.handle_chunk(b"first")
    broadcaster = session.broadcaster
    assert broadcaster is not None

    fake_pipeline.handles[LegKind.LIVE_FANOUT].emit_exit(1)

    assert session.state is SessionState.STREAMING
    assert session.broadcaster is None
    assert broadcaster.closed
    session.handle_chunk(b"second")
    assert fake_pipeline.handles[LegKind.DURABLE_FILE].chunks == [b"first", b"second"]
    await session.close()


@pytest.mark.asyncio
async def test_oversized_chunk_is_dropped(fake_pipeline: FakePipeline, tmp_path: Path) -> None:
    session, registry = _make_session(fake_pipeline, tmp_path, max_chunk_bytes=10)
    await session.start()

    session.handle_chunk(b"x" * 11)
    session.handle_chunk(b"y" * 10)

    assert registry.stats.dropped_chunks == 1
    assert registry.stats.ingest_bytes == 10
    for handle in fake_pipeline.spawned:
        assert handle.chunks == [b"y" * 10]
    await session.close()


@pytest.mark.asyncio
async def test_chunks_before_pipeline_are_ignored(
    fake_pipeline: FakePipeline, tmp_path: Path
) -> None:
    session, registry = _make_session(fake_pipeline, tmp_path)
    session.handle_chunk(b"early")
    assert session.state is SessionState.ADMITTED
    assert registry.stats.ingest_bytes == 0


@pytest.mark.asyncio
async def test_configured_legs_follow_config(fake_pipeline: FakePipeline, tmp_path: Path) -> None:
    session, _ = _make_session(
        fake_pipeline,
        tmp_path,
        output_mode=OutputMode.NONE,
        rtp_url=None,
    )
    assert session.configured_legs() == [LegKind.LIVE_FANOUT]

    await session.start()
    assert [handle.kind for handle in fake_pipeline.spawned] == [LegKind.LIVE_FANOUT]
    await session.close()


@pytest.mark.asyncio
async def test_live_output_reaches_broadcaster(
    fake_pipeline: FakePipeline, tmp_path: Path
) -> None:
    session, registry = _make_session(fake_pipeline, tmp_path)
    await session.start()
    broadcaster = session.broadcaster
    assert broadcaster is not None

    live = fake_pipeline.handles[LegKind.LIVE_FANOUT]
    live.emit_output(b"OggS OpusHead")
    live.emit_output(b"OggS OpusTags")
    live.emit_output(b"old page")
    consumer = RecordingConsumer()
    assert broadcaster.subscribe(consumer)
    live.emit_output(b"new page")

    assert bytes(consumer.data) == b"OggS OpusHeadOggS OpusTagsnew page"
    assert registry.stats.fanout_bytes == len(b"OggS OpusHeadOggS OpusTagsold pagenew page")
    assert registry.latest_live_session() is session
    assert session.info().live_consumers == 1

    await session.close()
    assert consumer.closed
    assert registry.latest_live_session() is None


@pytest.mark.asyncio
async def test_webm_session_normalizes_before_writing(
    fake_pipeline: FakePipeline, tmp_path: Path
) -> None:
    session, _ = _make_session(
        fake_pipeline,
        tmp_path,
        source_format=SourceFormat.WEBM,
        live_fanout=False,
        rtp_url=None,
    )
    await session.start()
    assert session.normalizer is not None

    first = EBML_MARKER + b"header one" + CLUSTER_MARKER + b"a"
    session.handle_chunk(first)
    session.handle_chunk(EBML_MARKER + b"header two" + CLUSTER_MARKER + b"b")

    handle = fake_pipeline.handles[LegKind.DURABLE_FILE]
    assert handle.chunks == [first, CLUSTER_MARKER + b"b"]
    await session.close()
