"""Utility functions for aioaudiorelay."""

from __future__ import annotations

import re
import socket

DEFAULT_RTP_HOST = "127.0.0.1"
DEFAULT_RTP_PORT = 5004

_RTP_URL_RE = re.compile(r"^rtp://([^:/]+):(\d+)", re.IGNORECASE)


def get_local_ip() -> str | None:
    """Get a local IP address that can be used for mDNS advertising.

    Returns the IP address of the interface that would be used to connect
    to an external address, or None if no network is available.
    """
    try:
        # Connecting a UDP socket sends nothing, it only selects the interface
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            result: str = s.getsockname()[0]
            return result
    except OSError:
        return None


def parse_rtp_url(url: str | None) -> tuple[str, int]:
    """Return ``(host, port)`` of an ``rtp://host:port`` URL.

    Anything that does not match falls back to ``127.0.0.1:5004``.
    """
    match = _RTP_URL_RE.match(url or "")
    if match is None:
        return DEFAULT_RTP_HOST, DEFAULT_RTP_PORT
    return match.group(1), int(match.group(2))
