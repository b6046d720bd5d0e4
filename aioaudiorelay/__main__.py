"""Command line entry point: ``python -m aioaudiorelay serve|push``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from aioaudiorelay import __version__
from aioaudiorelay.client import IngestClient
from aioaudiorelay.models import BackpressurePolicy, OutputMode, RelayConfig, SourceFormat
from aioaudiorelay.server import RelayServer

logger = logging.getLogger("aioaudiorelay")

# CLI option -> config field, applied only when given
_SERVE_OVERRIDES = {
    "host": "host",
    "port": "port",
    "ingest_path": "ingest_path",
    "output_path": "output_path",
    "output_mode": "output_mode",
    "input_format": "input_format",
    "rtp_url": "rtp_url",
    "ffmpeg": "ffmpeg_binary",
    "bitrate": "bitrate",
    "backpressure": "backpressure",
    "mdns": "advertise_mdns",
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aioaudiorelay", description="Real-time audio relay"
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="logging verbosity (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the relay server")
    serve.add_argument("--config", type=Path, help="JSON file with config values")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.add_argument("--ingest-path")
    serve.add_argument("--output-path")
    serve.add_argument("--output-mode", type=OutputMode, choices=list(OutputMode))
    serve.add_argument("--input-format", type=SourceFormat, choices=list(SourceFormat))
    serve.add_argument("--rtp-url", help="RTP target, an empty string disables the leg")
    serve.add_argument("--ffmpeg", help="path of the ffmpeg binary")
    serve.add_argument("--bitrate")
    serve.add_argument(
        "--backpressure", type=BackpressurePolicy, choices=list(BackpressurePolicy)
    )
    serve.add_argument(
        "--mdns", action=argparse.BooleanOptionalAction, default=None, help="advertise via mDNS"
    )

    push = sub.add_parser("push", help="stream a file to a relay")
    push.add_argument("url", help="ingest URL, e.g. ws://localhost:8000/ingest")
    push.add_argument("file", help="audio file to send, '-' for stdin")
    push.add_argument("--format", type=SourceFormat, choices=list(SourceFormat))
    push.add_argument("--output", type=OutputMode, choices=list(OutputMode))
    push.add_argument("--token")
    push.add_argument("--chunk-size", type=int, default=4096)
    push.add_argument(
        "--interval", type=float, default=0.0, help="seconds to wait between chunks"
    )
    return parser


def load_config(args: argparse.Namespace) -> RelayConfig:
    """Combine defaults, the JSON file, the environment and CLI flags, later wins."""
    base = RelayConfig()
    if args.config is not None:
        base = RelayConfig.from_json(args.config.read_text())
    config = RelayConfig.from_env(base=base)
    overrides: dict[str, Any] = {}
    for option, field_name in _SERVE_OVERRIDES.items():
        value = getattr(args, option, None)
        if value is not None:
            overrides[field_name] = value
    if overrides.get("rtp_url") == "":
        overrides["rtp_url"] = None
    return config.with_overrides(**overrides)


async def _serve(config: RelayConfig) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.debug("Config: %s", config.to_dict())
    server = RelayServer(loop, config)
    await server.start_server()
    try:
        await stop.wait()
        logger.info("Shutting down")
    finally:
        await server.close()


async def _read_chunks(
    path: str, chunk_size: int, interval: float
) -> AsyncIterator[bytes]:
    stream = sys.stdin.buffer if path == "-" else open(path, "rb")  # noqa: SIM115
    try:
        while chunk := await asyncio.to_thread(stream.read, chunk_size):
            yield chunk
            if interval > 0:
                await asyncio.sleep(interval)
    finally:
        if stream is not sys.stdin.buffer:
            stream.close()


async def _push(args: argparse.Namespace) -> int:
    client = IngestClient(token=args.token, source_format=args.format, output_mode=args.output)
    await client.connect(args.url)
    try:
        count = await client.stream(_read_chunks(args.file, args.chunk_size, args.interval))
        logger.info("Sent %d chunks (%d bytes)", count, client.bytes_sent)
    finally:
        await client.disconnect()
    code = client.close_code
    if code is not None and code >= 4000:
        logger.error("Relay rejected the stream (code=%s)", code)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the command line interface."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "push":
        return asyncio.run(_push(args))

    try:
        config = load_config(args)
    except (OSError, LookupError, ValueError) as err:
        logger.error("Invalid configuration: %s", err)
        return 2
    asyncio.run(_serve(config))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
