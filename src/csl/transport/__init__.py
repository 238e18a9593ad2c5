"""Delivery of ingest payloads: HTTP client and durable retry buffer."""

from csl.transport.buffer import BufferedEntry, BufferNotInitializedError, LocalBuffer
from csl.transport.client import IngestClient, IngestClientConfig

__all__ = [
    "BufferedEntry",
    "BufferNotInitializedError",
    "IngestClient",
    "IngestClientConfig",
    "LocalBuffer",
]
