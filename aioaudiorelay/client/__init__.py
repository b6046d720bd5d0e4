"""Public interface for the ingest client package."""

from .client import DisconnectCallback, IngestClient

__all__ = [
    "DisconnectCallback",
    "IngestClient",
]
