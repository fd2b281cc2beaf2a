"""
Configuration management for the journal repeater.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings except the log group have sensible defaults
    - One process ships to exactly one log group/stream pair
    - Credentials are never read here; they come from the AWS chain

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep SINK_MAX_ATTEMPTS at 1 unless retries below the repeater are wanted
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10000

# PutLogEvents payload limits: event bytes are the UTF-8 message plus a
# fixed per-event overhead, summed over the batch
MAX_BATCH_BYTES = 1_048_576
MAX_EVENT_BYTES = 262_144
EVENT_OVERHEAD_BYTES = 26


class SinkBackend(Enum):
    """Supported sink backends."""

    CLOUDWATCH = "cloudwatch"
    MEMORY = "memory"


@dataclass(frozen=True)
class SinkConfig:
    """Sink transport configuration.

    Attributes:
        backend: Which sink backend to use
        region: AWS region
        endpoint_url: Custom endpoint URL (for LocalStack testing)
        connect_timeout: Connection timeout in seconds
        read_timeout: Read timeout in seconds
        max_attempts: Total botocore attempts per request (1 = no retries)
    """

    backend: SinkBackend = SinkBackend.CLOUDWATCH
    region: str = "us-east-1"
    endpoint_url: str | None = None
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    max_attempts: int = 1

    @classmethod
    def from_env(cls) -> SinkConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("SINK_BACKEND", "cloudwatch").lower()
        try:
            backend = SinkBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid SINK_BACKEND '{backend_str}'. Must be one of: cloudwatch, memory"
            )

        return cls(
            backend=backend,
            region=os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")),
            endpoint_url=os.getenv("CLOUDWATCH_ENDPOINT_URL"),
            connect_timeout=float(os.getenv("SINK_CONNECT_TIMEOUT", "10")),
            read_timeout=float(os.getenv("SINK_READ_TIMEOUT", "30")),
            max_attempts=int(os.getenv("SINK_MAX_ATTEMPTS", "1")),
        )


@dataclass(frozen=True)
class RepeaterConfig:
    """Delivery repeater configuration.

    Attributes:
        log_group_name: Target log group
        log_stream_name: Target log stream (defaults to the hostname)
        debug: Verbose logging of token and provisioning activity
        batch_size: Records per append call
        batch_bytes: Payload bytes per append call, per-event overhead included
    """

    log_group_name: str = ""
    log_stream_name: str = field(default_factory=socket.gethostname)
    debug: bool = False
    batch_size: int = 100
    batch_bytes: int = MAX_BATCH_BYTES

    @classmethod
    def from_env(cls) -> RepeaterConfig:
        """Load configuration from environment variables."""
        return cls(
            log_group_name=os.getenv("LOG_GROUP_NAME", ""),
            log_stream_name=os.getenv("LOG_STREAM_NAME") or socket.gethostname(),
            debug=os.getenv("REPEATER_DEBUG", "false").lower() == "true",
            batch_size=int(os.getenv("REPEATER_BATCH_SIZE", "100")),
            batch_bytes=int(os.getenv("REPEATER_BATCH_BYTES", str(MAX_BATCH_BYTES))),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ShipperConfig:
    """Complete process configuration.

    Attributes:
        sink: Sink transport configuration
        repeater: Repeater binding and batching configuration
        observability: Logging configuration
    """

    sink: SinkConfig = field(default_factory=SinkConfig)
    repeater: RepeaterConfig = field(default_factory=RepeaterConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ShipperConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            sink=SinkConfig.from_env(),
            repeater=RepeaterConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.repeater.log_group_name:
            raise ValueError("LOG_GROUP_NAME is required")
        if not self.repeater.log_stream_name:
            raise ValueError("LOG_STREAM_NAME is required")
        if not 1 <= self.repeater.batch_size <= MAX_BATCH_SIZE:
            raise ValueError(
                f"REPEATER_BATCH_SIZE must be between 1 and {MAX_BATCH_SIZE}, "
                f"got {self.repeater.batch_size}"
            )
        if not EVENT_OVERHEAD_BYTES < self.repeater.batch_bytes <= MAX_BATCH_BYTES:
            raise ValueError(
                f"REPEATER_BATCH_BYTES must be between {EVENT_OVERHEAD_BYTES + 1} and "
                f"{MAX_BATCH_BYTES}, got {self.repeater.batch_bytes}"
            )
        if self.sink.max_attempts < 1:
            raise ValueError("SINK_MAX_ATTEMPTS must be at least 1")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Repeater configuration loaded",
            extra={
                "sink_backend": self.sink.backend.value,
                "region": self.sink.region,
                "endpoint": self.sink.endpoint_url,
                "log_group": self.repeater.log_group_name,
                "log_stream": self.repeater.log_stream_name,
                "batch_size": self.repeater.batch_size,
                "batch_bytes": self.repeater.batch_bytes,
                "debug": self.repeater.debug,
                "log_level": self.observability.log_level,
            },
        )
