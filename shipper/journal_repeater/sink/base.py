"""
Base protocol and types for the log sink abstraction.

This module defines the SinkClient protocol that all sink backends must
implement, along with the wire event type and the closed set of error
kinds a backend may report.

Invariants:
    - Every SinkClient operation is exactly one remote call, never retried
    - Every failure surfaces as SinkError with a SinkErrorKind
    - InputEvent timestamps are microseconds; backends convert as needed

How to change safely:
    - Adding a SinkErrorKind requires updating the repeater dispatch
    - Backends must map unknown failures to FATAL, never drop them
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence, runtime_checkable


class SinkErrorKind(Enum):
    """Failure kinds reported by a sink backend."""

    NOT_FOUND = "not_found"
    TOKEN_MISMATCH = "token_mismatch"
    ALREADY_ACCEPTED = "already_accepted"
    ALREADY_EXISTS = "already_exists"
    TRANSIENT = "transient"
    FATAL = "fatal"


class SinkError(Exception):
    """A sink operation failed.

    Attributes:
        kind: Classified failure kind
        code: Backend-specific error code, if any
        message: Human-readable description
    """

    def __init__(self, kind: SinkErrorKind, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.message = message

    def __str__(self) -> str:
        if self.code:
            return f"{self.kind.value} ({self.code}): {self.message}"
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class InputEvent:
    """One event as sent to the sink.

    Attributes:
        message: Opaque payload (serialized record)
        timestamp: Event time in microseconds since the epoch
    """

    message: str
    timestamp: int


@runtime_checkable
class SinkClient(Protocol):
    """Protocol for log sink backends.

    A sink stores ordered streams of events grouped into log groups. Each
    append must present the stream's current ordering token, which the
    sink hands back after every successful append.

    Example:
        >>> token = await sink.append_events("app", "host-1", None, events)
        >>> token = await sink.append_events("app", "host-1", token, more)
    """

    @abstractmethod
    async def append_events(
        self,
        group: str,
        stream: str,
        token: Optional[str],
        events: Sequence[InputEvent],
    ) -> str:
        """Append events to a stream.

        Args:
            group: Log group name
            stream: Log stream name
            token: Ordering token from the previous append, or None/empty
            events: Events in wire order

        Returns:
            The next ordering token for the stream

        Raises:
            SinkError: NOT_FOUND, TOKEN_MISMATCH, ALREADY_ACCEPTED,
                TRANSIENT or FATAL
        """
        ...

    @abstractmethod
    async def lookup_token(self, group: str, stream_prefix: str) -> Optional[str]:
        """Get the current ordering token of the stream named by the prefix.

        Args:
            group: Log group name
            stream_prefix: Stream name prefix; the exact match wins

        Returns:
            The current token, or None if the stream (or group) does not
            exist or has never been written

        Raises:
            SinkError: TRANSIENT or FATAL
        """
        ...

    @abstractmethod
    async def create_stream(self, group: str, stream: str) -> None:
        """Create a log stream.

        Raises:
            SinkError: NOT_FOUND (group missing), ALREADY_EXISTS or FATAL
        """
        ...

    @abstractmethod
    async def create_group(self, group: str) -> None:
        """Create a log group.

        Raises:
            SinkError: ALREADY_EXISTS or FATAL
        """
        ...
