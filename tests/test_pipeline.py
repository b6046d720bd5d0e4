from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from aioaudiorelay.models import BackpressurePolicy, LegKind, RelayConfig, SourceFormat
from aioaudiorelay.server.pipeline import (
    LOW_LATENCY_INPUT_ARGS,
    PipelineManager,
    SpawnError,
    SubprocessEvent,
    SubprocessExitEvent,
    SubprocessHandle,
    SubprocessOutputEvent,
    build_command,
)

ECHO_SCRIPT = (
    "import sys\n"
    "while True:\n"
    "    data = sys.stdin.buffer.read1(65536)\n"
    "    if not data:\n"
    "        break\n"
    "    sys.stdout.buffer.write(data)\n"
    "    sys.stdout.buffer.flush()\n"
)
SLEEP_SCRIPT = "import time; time.sleep(30)"
STUBBORN_SCRIPT = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "sys.stdout.write('ready')\n"
    "sys.stdout.flush()\n"
    "time.sleep(30)\n"
)


class _Recorder:
    def __init__(self) -> None:
        self.events: list[SubprocessEvent] = []
        self.exited = asyncio.Event()
        self.output_seen = asyncio.Event()

    def __call__(self, handle: SubprocessHandle, event: SubprocessEvent) -> None:
        self.events.append(event)
        if isinstance(event, SubprocessOutputEvent):
            self.output_seen.set()
        elif isinstance(event, SubprocessExitEvent):
            self.exited.set()

    @property
    def output(self) -> bytes:
        return b"".join(e.data for e in self.events if isinstance(e, SubprocessOutputEvent))


def test_pcm_live_command_declares_raw_input_before_i() -> None:
    config = RelayConfig(sample_rate=44100, channels=2, bitrate="64k")
    cmd = build_command(LegKind.LIVE_FANOUT, SourceFormat.PCM, config)

    i_index = cmd.index("-i")
    assert cmd[i_index + 1] == "pipe:0"
    assert cmd[cmd.index("-f") : cmd.index("-f") + 6] == ["-f", "s16le", "-ar", "44100", "-ac", "2"]
    assert cmd.index("-fflags") < i_index
    assert cmd.index("-use_wallclock_as_timestamps") < i_index
    assert cmd[i_index + 1 :].count("-fflags") == 0
    assert ["-c:a", "libopus", "-b:a", "64k"] == cmd[cmd.index("-c:a") : cmd.index("-c:a") + 4]
    assert cmd[-5:] == ["-page_duration", "20000", "-f", "ogg", "pipe:1"]


def test_container_input_has_no_raw_parameters() -> None:
    cmd = build_command(LegKind.LIVE_FANOUT, SourceFormat.WEBM, RelayConfig())
    i_index = cmd.index("-i")
    assert cmd[4:i_index] == ["-f", "webm", *LOW_LATENCY_INPUT_ARGS]
    assert "-ar" not in cmd[:i_index]


def test_file_leg_writes_recording(tmp_path: Path) -> None:
    config = RelayConfig(output_path=str(tmp_path))
    cmd = build_command(LegKind.DURABLE_FILE, SourceFormat.OGG, config, session_id="abc")
    assert cmd[-3:] == ["-f", "ogg", str(tmp_path / "record-abc.ogg")]
    with pytest.raises(ValueError):
        build_command(LegKind.DURABLE_FILE, SourceFormat.OGG, config)


def test_rtp_leg_arguments() -> None:
    config = RelayConfig(rtp_url="rtp://10.0.0.5:6000", packet_loss_percent=10)
    cmd = build_command(LegKind.LIVE_NETWORK, SourceFormat.PCM, config)

    assert cmd[4] == "-re"
    assert cmd[cmd.index("-frame_duration") + 1] == "10"
    assert cmd[cmd.index("-fec") : cmd.index("-fec") + 4] == ["-fec", "1", "-packet_loss", "10"]
    assert cmd[-5:-1] == ["-f", "rtp", "-payload_type", "97"]
    assert cmd[-1] == "rtp://10.0.0.5:6000?pkt_size=1200"


def test_rtp_leg_without_realtime_or_fec() -> None:
    config = RelayConfig(network_realtime=False)
    cmd = build_command(
        LegKind.LIVE_NETWORK, SourceFormat.OPUS, config, target="rtp://127.0.0.1:5004?ttl=2"
    )
    assert "-re" not in cmd
    assert "-fec" not in cmd
    assert cmd[-1] == "rtp://127.0.0.1:5004?ttl=2&pkt_size=1200"


def test_rtp_leg_requires_target() -> None:
    with pytest.raises(ValueError):
        build_command(LegKind.LIVE_NETWORK, SourceFormat.PCM, RelayConfig(rtp_url=None))


@pytest.mark.asyncio
async def test_missing_binary_raises_spawn_error(tmp_path: Path) -> None:
    config = RelayConfig(ffmpeg_binary=str(tmp_path / "no-such-ffmpeg"))
    manager = PipelineManager(config)
    with pytest.raises(SpawnError) as exc_info:
        await manager.spawn(LegKind.LIVE_NETWORK, SourceFormat.PCM)
    assert exc_info.value.kind is LegKind.LIVE_NETWORK


@pytest.mark.asyncio
async def test_spawn_without_target_raises_spawn_error() -> None:
    manager = PipelineManager(RelayConfig(rtp_url=None))
    with pytest.raises(SpawnError):
        await manager.spawn(LegKind.LIVE_NETWORK, SourceFormat.PCM)


@pytest.mark.asyncio
async def test_output_events_precede_exit_event() -> None:
    manager = PipelineManager(RelayConfig())
    handle = await manager.launch(LegKind.LIVE_FANOUT, [sys.executable, "-c", ECHO_SCRIPT])
    recorder = _Recorder()
    handle.add_event_listener(recorder)

    payload = [bytes([n]) * 1000 for n in range(3)]
    for chunk in payload:
        assert handle.write(chunk)
    handle.close_input()

    async with asyncio.timeout(10):
        await recorder.exited.wait()

    assert recorder.output == b"".join(payload)
    assert isinstance(recorder.events[-1], SubprocessExitEvent)
    assert recorder.events[-1].returncode == 0
    assert handle.bytes_written == 3000
    await handle.terminate()


@pytest.mark.asyncio
async def test_terminate_is_shared_and_writes_after_are_noops() -> None:
    manager = PipelineManager(RelayConfig())
    handle = await manager.launch(LegKind.DURABLE_FILE, [sys.executable, "-c", SLEEP_SCRIPT])

    results = await asyncio.gather(handle.terminate(1.0), handle.terminate(1.0))

    assert results[0] == results[1]
    assert handle.returncode is not None
    assert not handle.input_open
    assert handle.write(b"late") is False
    handle.close_input()
    assert await handle.terminate() == results[0]


@pytest.mark.asyncio
async def test_terminate_escalates_to_kill() -> None:
    manager = PipelineManager(RelayConfig())
    handle = await manager.launch(LegKind.LIVE_FANOUT, [sys.executable, "-c", STUBBORN_SCRIPT])
    recorder = _Recorder()
    handle.add_event_listener(recorder)
    async with asyncio.timeout(10):
        await recorder.output_seen.wait()

    returncode = await handle.terminate(0.2)

    assert returncode == -9


@pytest.mark.asyncio
async def test_drop_policy_discards_chunk_for_saturated_leg() -> None:
    manager = PipelineManager(RelayConfig(max_input_buffer_bytes=16))
    handle = await manager.launch(LegKind.DURABLE_FILE, [sys.executable, "-c", SLEEP_SCRIPT])
    try:
        assert handle.write(b"x" * 32) is False
        assert handle.dropped_chunks == 1
        assert handle.write(b"x" * 8) is True
        assert handle.bytes_written == 8
    finally:
        await handle.terminate(1.0)


@pytest.mark.asyncio
async def test_suspend_policy_keeps_order() -> None:
    config = RelayConfig(max_input_buffer_bytes=16, backpressure=BackpressurePolicy.SUSPEND)
    manager = PipelineManager(config)
    handle = await manager.launch(LegKind.LIVE_FANOUT, [sys.executable, "-c", ECHO_SCRIPT])
    recorder = _Recorder()
    handle.add_event_listener(recorder)

    assert handle.write(b"a" * 32)
    assert handle.suspended
    assert handle.write(b"b" * 4)
    async with asyncio.timeout(10):
        while handle.suspended:
            await asyncio.sleep(0.01)
    assert handle.write(b"c" * 4)
    handle.close_input()

    async with asyncio.timeout(10):
        await recorder.exited.wait()
    assert recorder.output == b"a" * 32 + b"b" * 4 + b"c" * 4
    await handle.terminate()
