"""
Delivery repeater - ships record batches to one log stream in order.

The repeater owns a single (group, stream) binding and the ordering token
for it. Each append() call annotates and serializes a batch, sends it with
the current token and, if the sink rejects it for a recoverable reason,
runs exactly one recovery path:

    NOT_FOUND         create stream (and group if needed), retry once
    TOKEN_MISMATCH    look up the token, retry once with it
    ALREADY_ACCEPTED  look up the token, do not resend
    anything else     raise

Invariants:
    - The token changes only after a successful append or lookup
    - At most two append_events calls per append()
    - append() calls on one repeater never interleave (per-instance lock)
    - Every failure is raised as DeliveryError tagged with its phase

How to change safely:
    - Keep recovery non-recursive; a retry must never trigger recovery
    - Test every SinkErrorKind branch against InMemorySinkClient
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .config import RepeaterConfig
from .records import Batch
from .sequence import SequenceCounter, process_counter
from .sink.base import InputEvent, SinkClient, SinkError, SinkErrorKind

logger = logging.getLogger(__name__)


class DeliveryPhase(Enum):
    """Where in the append protocol a failure happened."""

    PRIME = "prime"
    APPEND = "append"
    PROVISION = "provision"
    PROVISION_RETRY = "provision_retry"
    REFRESH = "refresh"
    RESYNC = "resync"


class RepeaterError(Exception):
    """Base exception for repeater operations."""
    pass


class RepeaterClosedError(RepeaterError):
    """The repeater was closed."""
    pass


class DeliveryError(RepeaterError):
    """A batch could not be delivered.

    Attributes:
        phase: Protocol phase that failed
        cause: Underlying exception, if any
        kind: SinkErrorKind of the cause (None if not a SinkError)
    """

    def __init__(
        self,
        phase: DeliveryPhase,
        cause: Optional[BaseException] = None,
        detail: Optional[str] = None,
    ) -> None:
        self.phase = phase
        self.cause = cause
        self.detail = detail
        message = f"delivery failed during {phase.value}"
        if detail:
            message = f"{message}: {detail}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)

    @property
    def kind(self) -> Optional[SinkErrorKind]:
        if isinstance(self.cause, SinkError):
            return self.cause.kind
        return None


@dataclass(frozen=True)
class StreamBinding:
    """Destination of a repeater's output."""

    group: str
    stream: str

    def __str__(self) -> str:
        return f"{self.group}/{self.stream}"


def _is_kind(error: BaseException, kind: SinkErrorKind) -> bool:
    return isinstance(error, SinkError) and error.kind is kind


class DeliveryRepeater:
    """Appends record batches to one log stream, recovering token state.

    Construction never fails; configuration or provisioning problems show
    up on the first append().

    Attributes:
        binding: Target group and stream
        debug: Log token and provisioning activity

    Example:
        >>> repeater = DeliveryRepeater(sink, "app", "host-1")
        >>> await repeater.append([Record(time_usec=..., message="started")])
        >>> await repeater.close()
    """

    def __init__(
        self,
        sink: SinkClient,
        group_name: str,
        stream_name: str,
        debug: bool = False,
        sequence: Optional[SequenceCounter] = None,
    ) -> None:
        self.binding = StreamBinding(group_name, stream_name)
        self.debug = debug
        self._sink: Optional[SinkClient] = sink
        self._sequence = sequence or process_counter()
        self._token = ""
        self._lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_config(
        cls,
        sink: SinkClient,
        config: RepeaterConfig,
        sequence: Optional[SequenceCounter] = None,
    ) -> DeliveryRepeater:
        """Create a repeater bound to the configured group and stream."""
        return cls(
            sink,
            config.log_group_name,
            config.log_stream_name,
            debug=config.debug,
            sequence=sequence,
        )

    @property
    def token(self) -> str:
        """Current ordering token ("" if none known)."""
        return self._token

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def append(self, batch: Batch) -> None:
        """Deliver a batch to the bound stream.

        Every record gets a fresh sequence id, even when the batch is a
        resubmission of one that failed earlier.

        With no token yet, a lookup primes the token first. The append
        that follows still goes through full recovery, so a mismatch on
        that path costs a second lookup (two in total for the call).

        Args:
            batch: Non-empty, ordered records

        Raises:
            ValueError: If the batch is empty
            RepeaterClosedError: If close() was called
            DeliveryError: If the batch was not delivered
        """
        if not batch:
            raise ValueError("batch must contain at least one record")

        async with self._lock:
            if self._closed:
                raise RepeaterClosedError(f"repeater for {self.binding} is closed")

            events = self._build_events(batch)

            if not self._token:
                await self._prime_token()

            try:
                await self._put_events(events)
                appended = True
            except SinkError as e:
                appended = await self._recover(e, events)
            except Exception as e:
                logger.error(f"Error from put events: {e}", extra=self._log_extra())
                raise DeliveryError(DeliveryPhase.APPEND, e) from e

            if self.debug and appended:
                logger.info(
                    "Batch sent successfully",
                    extra=self._log_extra(count=len(events)),
                )

    async def close(self) -> None:
        """Release the sink handle.

        Waits for an in-flight append to finish; nothing is buffered, so
        nothing is flushed. The sink itself is left open for its owner.
        """
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            self._sink = None
        logger.debug("Repeater closed", extra=self._log_extra())

    # Protocol steps

    def _build_events(self, batch: Batch) -> List[InputEvent]:
        seq_ids = self._sequence.reserve(len(batch))
        events = []
        for record, seq_id in zip(batch, seq_ids):
            record.seq_id = seq_id
            events.append(InputEvent(message=record.to_json(), timestamp=record.time_usec))
        return events

    async def _prime_token(self) -> None:
        # Fresh repeater: the stream may already exist from an earlier run.
        # Only adopts the token; the append after it is the normal attempt.
        try:
            token = await self._sink.lookup_token(self.binding.group, self.binding.stream)
        except Exception as e:
            raise DeliveryError(DeliveryPhase.PRIME, e, "token lookup failed") from e
        if token:
            self._adopt_token(token)

    async def _put_events(self, events: List[InputEvent]) -> None:
        next_token = await self._sink.append_events(
            self.binding.group,
            self.binding.stream,
            self._token,
            events,
        )
        self._adopt_token(next_token)

    async def _recover(self, error: SinkError, events: List[InputEvent]) -> bool:
        """Run the recovery path for one rejection.

        Returns:
            True if this call appended the batch, False if the sink
            already had it
        """
        kind = error.kind
        if kind is SinkErrorKind.NOT_FOUND:
            await self._recover_not_found(events)
            return True
        elif kind is SinkErrorKind.ALREADY_ACCEPTED:
            logger.error(
                f"DataAlreadyAccepted from put events: {error}",
                extra=self._log_extra(),
            )
            await self._resync_token()
            return False
        elif kind is SinkErrorKind.TOKEN_MISMATCH:
            logger.error(
                f"InvalidSequenceToken from put events: {error}",
                extra=self._log_extra(),
            )
            try:
                await self._refresh_token(events)
            except Exception as e:
                raise DeliveryError(
                    DeliveryPhase.REFRESH, e, "put events after token lookup failed"
                ) from e
            return True
        else:
            logger.error(f"Error from put events: {error}", extra=self._log_extra())
            raise DeliveryError(DeliveryPhase.APPEND, error) from error

    async def _refresh_token(self, events: List[InputEvent]) -> None:
        token = await self._sink.lookup_token(self.binding.group, self.binding.stream)
        self._adopt_token(token or "")
        await self._put_events(events)

    async def _resync_token(self) -> None:
        try:
            token = await self._sink.lookup_token(self.binding.group, self.binding.stream)
        except Exception as e:
            raise DeliveryError(
                DeliveryPhase.RESYNC, e, "token lookup after duplicate batch failed"
            ) from e
        if not token:
            raise DeliveryError(DeliveryPhase.RESYNC, detail="no token found after duplicate batch")
        self._adopt_token(token)

    async def _recover_not_found(self, events: List[InputEvent]) -> None:
        await self._provision()
        try:
            await self._put_events(events)
        except Exception as e:
            raise DeliveryError(
                DeliveryPhase.PROVISION_RETRY, e, "put events after provisioning failed"
            ) from e

    async def _provision(self) -> None:
        try:
            await self._create_stream()
            return
        except Exception as e:
            # Only a missing group is worth another try
            if not _is_kind(e, SinkErrorKind.NOT_FOUND):
                raise DeliveryError(
                    DeliveryPhase.PROVISION, e, "failed to create log stream"
                ) from e

        try:
            await self._create_group()
        except Exception as e:
            raise DeliveryError(DeliveryPhase.PROVISION, e, "failed to create log group") from e

        try:
            await self._create_stream()
        except Exception as e:
            raise DeliveryError(
                DeliveryPhase.PROVISION, e, "failed to create log stream after log group"
            ) from e

    async def _create_stream(self) -> None:
        if self.debug:
            logger.debug("Creating log stream", extra=self._log_extra())
        await self._sink.create_stream(self.binding.group, self.binding.stream)

    async def _create_group(self) -> None:
        if self.debug:
            logger.debug("Creating log group", extra=self._log_extra())
        await self._sink.create_group(self.binding.group)

    def _adopt_token(self, token: str) -> None:
        self._token = token
        if self.debug:
            logger.debug("Next token", extra=self._log_extra(token=token))

    def _log_extra(self, **extra: object) -> dict:
        return {"group": self.binding.group, "stream": self.binding.stream, **extra}
