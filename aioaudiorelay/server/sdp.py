"""Session description for players of the live RTP stream."""

from __future__ import annotations

from .pipeline import RTP_FRAME_DURATION_MS, RTP_PAYLOAD_TYPE

OPUS_CLOCK_RATE = 48000


def build_opus_sdp(
    ip: str = "127.0.0.1",
    port: int = 5004,
    channels: int = 1,
    *,
    payload_type: int = RTP_PAYLOAD_TYPE,
    ptime_ms: int = RTP_FRAME_DURATION_MS,
) -> str:
    """
    Build an SDP file describing the Opus RTP stream sent by the network leg.

    Players such as ffplay or VLC open the stream from this text.
    """
    stereo = "1" if channels == 2 else "0"
    lines = [
        "v=0",
        f"o=- 0 0 IN IP4 {ip}",
        "s=Live Opus RTP",
        f"c=IN IP4 {ip}",
        "t=0 0",
        f"m=audio {port} RTP/AVP {payload_type}",
        f"a=rtpmap:{payload_type} opus/{OPUS_CLOCK_RATE}/{channels}",
        f"a=ptime:{ptime_ms}",
        f"a=fmtp:{payload_type} sprop-maxcapturerate={OPUS_CLOCK_RATE};"
        f"maxplaybackrate={OPUS_CLOCK_RATE};stereo={stereo}",
        "",
    ]
    return "\r\n".join(lines)
