"""
In-memory sink implementation for testing.

This module provides a simulated sequence-token sink for:
- Unit tests of the delivery state machine
- Integration tests of the shipping pipeline
- Local development without AWS credentials

Invariants:
    - All data is lost on process exit
    - Token semantics match the production sink: a stale token is either
      a duplicate of an accepted batch (ALREADY_ACCEPTED) or a mismatch
    - Every call is recorded in ``calls``, including failed ones

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the SinkClient protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from .base import InputEvent, SinkError, SinkErrorKind

logger = logging.getLogger(__name__)


@dataclass
class InMemoryStream:
    """In-memory stream storage."""

    events: List[InputEvent] = field(default_factory=list)
    head: Optional[str] = None
    # token presented -> (payload digest, token issued)
    accepted: Dict[Optional[str], Tuple[str, str]] = field(default_factory=dict)


@dataclass(frozen=True)
class SinkCall:
    """One recorded call against the in-memory sink."""

    operation: str
    group: str
    stream: Optional[str] = None
    token: Optional[str] = None
    event_count: int = 0


class InMemorySinkClient:
    """In-memory implementation of SinkClient for testing.

    Attributes:
        calls: Every operation invoked, in order

    Example:
        >>> sink = InMemorySinkClient()
        >>> await sink.connect()
        >>> await sink.create_group("app")
        >>> await sink.create_stream("app", "host-1")
        >>> token = await sink.append_events("app", "host-1", None, events)
    """

    def __init__(self) -> None:
        self._groups: Dict[str, Dict[str, InMemoryStream]] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self._failures: Dict[str, Deque[BaseException]] = defaultdict(deque)
        self._next_token = 0
        self.calls: List[SinkCall] = []

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemorySinkClient connected")

    async def close(self) -> None:
        """Close the client. Stored data is kept for inspection."""
        self._connected = False
        logger.debug("InMemorySinkClient closed")

    async def append_events(
        self,
        group: str,
        stream: str,
        token: Optional[str],
        events: Sequence[InputEvent],
    ) -> str:
        self.calls.append(SinkCall("append_events", group, stream, token, len(events)))
        self._raise_injected("append_events")

        presented = token or None
        async with self._lock:
            target = self._get_stream(group, stream)
            digest = _digest(events)

            if presented != target.head:
                previous = target.accepted.get(presented)
                if previous is not None and previous[0] == digest:
                    raise SinkError(
                        SinkErrorKind.ALREADY_ACCEPTED,
                        "The given batch of log events has already been accepted",
                        code="DataAlreadyAcceptedException",
                    )
                raise SinkError(
                    SinkErrorKind.TOKEN_MISMATCH,
                    f"The given sequenceToken is invalid. The next expected "
                    f"sequenceToken is: {target.head}",
                    code="InvalidSequenceTokenException",
                )

            next_token = self._issue_token()
            target.events.extend(events)
            target.accepted[presented] = (digest, next_token)
            target.head = next_token

        logger.debug(
            "Events appended to in-memory sink",
            extra={"group": group, "stream": stream, "count": len(events)},
        )
        return next_token

    async def lookup_token(self, group: str, stream_prefix: str) -> Optional[str]:
        self.calls.append(SinkCall("lookup_token", group, stream_prefix))
        self._raise_injected("lookup_token")

        streams = self._groups.get(group)
        if streams is None:
            return None
        target = streams.get(stream_prefix)
        if target is None:
            return None
        return target.head

    async def create_stream(self, group: str, stream: str) -> None:
        self.calls.append(SinkCall("create_stream", group, stream))
        self._raise_injected("create_stream")

        async with self._lock:
            streams = self._groups.get(group)
            if streams is None:
                raise SinkError(
                    SinkErrorKind.NOT_FOUND,
                    f"The specified log group does not exist: {group}",
                    code="ResourceNotFoundException",
                )
            if stream in streams:
                raise SinkError(
                    SinkErrorKind.ALREADY_EXISTS,
                    f"The specified log stream already exists: {stream}",
                    code="ResourceAlreadyExistsException",
                )
            streams[stream] = InMemoryStream()

    async def create_group(self, group: str) -> None:
        self.calls.append(SinkCall("create_group", group))
        self._raise_injected("create_group")

        async with self._lock:
            if group in self._groups:
                raise SinkError(
                    SinkErrorKind.ALREADY_EXISTS,
                    f"The specified log group already exists: {group}",
                    code="ResourceAlreadyExistsException",
                )
            self._groups[group] = {}

    def _get_stream(self, group: str, stream: str) -> InMemoryStream:
        streams = self._groups.get(group)
        if streams is None:
            raise SinkError(
                SinkErrorKind.NOT_FOUND,
                f"The specified log group does not exist: {group}",
                code="ResourceNotFoundException",
            )
        target = streams.get(stream)
        if target is None:
            raise SinkError(
                SinkErrorKind.NOT_FOUND,
                f"The specified log stream does not exist: {stream}",
                code="ResourceNotFoundException",
            )
        return target

    def _issue_token(self) -> str:
        self._next_token += 1
        return f"{self._next_token:056d}"

    def _raise_injected(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.popleft()

    # Testing helpers

    def inject_failure(self, operation: str, exception: BaseException) -> None:
        """Make the next call of ``operation`` raise ``exception``.

        Failures queue up: injecting twice fails the next two calls.
        The call is still recorded in ``calls``.
        """
        self._failures[operation].append(exception)

    def calls_to(self, operation: str) -> List[SinkCall]:
        """Recorded calls of one operation."""
        return [call for call in self.calls if call.operation == operation]

    def reset_calls(self) -> None:
        self.calls.clear()

    def group_exists(self, group: str) -> bool:
        return group in self._groups

    def stream_exists(self, group: str, stream: str) -> bool:
        return stream in self._groups.get(group, {})

    def get_events(self, group: str, stream: str) -> List[InputEvent]:
        """All events stored in a stream, in append order."""
        return list(self._groups.get(group, {}).get(stream, InMemoryStream()).events)

    def head_token(self, group: str, stream: str) -> Optional[str]:
        """Current head token of a stream, without recording a call."""
        target = self._groups.get(group, {}).get(stream)
        return target.head if target else None

    def seed_stream(self, group: str, stream: str, events: Sequence[InputEvent] = ()) -> Optional[str]:
        """Create group and stream directly, optionally with events.

        Returns:
            The head token after seeding (None if no events)
        """
        target = self._groups.setdefault(group, {}).setdefault(stream, InMemoryStream())
        if events:
            next_token = self._issue_token()
            target.accepted[target.head] = (_digest(events), next_token)
            target.events.extend(events)
            target.head = next_token
        return target.head


def _digest(events: Sequence[InputEvent]) -> str:
    h = hashlib.sha256()
    for event in events:
        h.update(str(event.timestamp).encode("utf-8"))
        h.update(b"\0")
        h.update(event.message.encode("utf-8"))
        h.update(b"\0")
    return h.hexdigest()


def describe_calls(calls: Sequence[SinkCall]) -> List[Tuple[Any, ...]]:
    """Compact (operation, token) view of a call log, handy in assertions."""
    return [(call.operation, call.token) for call in calls]
