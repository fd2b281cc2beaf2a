"""
Log sink abstraction for the journal repeater.

This module provides a pluggable sink backend interface supporting:
- AWS CloudWatch Logs (production)
- In-memory (for testing)

A sink stores log events in streams grouped under log groups. Every
append must present the ordering token returned by the previous append
to the same stream.

Invariants:
    - SinkClient operations never retry on their own
    - Failures are always SinkError with a SinkErrorKind

How to change safely:
    - New backends must implement the SinkClient protocol
    - Map every backend error code to a SinkErrorKind
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import InputEvent, SinkClient, SinkError, SinkErrorKind
from .cloudwatch import CloudWatchSinkClient, classify_client_error
from .memory import InMemorySinkClient

if TYPE_CHECKING:
    from ..config import SinkConfig


def create_sink_client(config: "SinkConfig") -> SinkClient:
    """Factory function to create a sink client from configuration.

    Args:
        config: Sink configuration

    Returns:
        Appropriate SinkClient implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import SinkBackend

    if config.backend == SinkBackend.CLOUDWATCH:
        return CloudWatchSinkClient(config)
    elif config.backend == SinkBackend.MEMORY:
        return InMemorySinkClient()
    else:
        raise ValueError(f"Unsupported sink backend: {config.backend}")


__all__ = [
    # Protocol and types
    "SinkClient",
    "SinkError",
    "SinkErrorKind",
    "InputEvent",
    # Factory
    "create_sink_client",
    "classify_client_error",
    # Implementations
    "CloudWatchSinkClient",
    "InMemorySinkClient",
]
