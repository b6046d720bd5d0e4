"""Real-time audio relay: WebSocket ingest, ffmpeg transcoding and live fan-out."""

__version__ = "0.1.0"
