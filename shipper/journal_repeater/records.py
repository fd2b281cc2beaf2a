"""
Record model and wire serialization.

A Record is one journal entry on its way to the sink. The repeater stamps
it with a sequence id and serializes it to pretty-printed JSON, which
becomes the opaque message of an InputEvent.

Invariants:
    - time_usec is the sink ordering key for the event (microseconds)
    - seq_id is assigned by the repeater, never by the producer
    - A record is not modified after to_json() has been called for a send
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

Batch = Sequence["Record"]

# Widest seq_id the repeater can stamp; sizes are measured before stamping
_MAX_SEQ_ID = 2**63 - 1

# journald fields promoted to first-class attributes
_PROMOTED_FIELDS = {
    "__REALTIME_TIMESTAMP",
    "MESSAGE",
    "PRIORITY",
    "_HOSTNAME",
    "SYSLOG_IDENTIFIER",
}


@dataclass
class Record:
    """A structured log entry.

    Attributes:
        time_usec: Wall-clock timestamp in microseconds since the epoch
        message: Log message text
        priority: Syslog priority (0=emerg .. 7=debug), if known
        hostname: Originating host
        identifier: Syslog identifier or command name
        fields: Any remaining journal fields
        seq_id: Process-wide sequence annotation (set by the repeater)
    """

    time_usec: int
    message: str
    priority: Optional[int] = None
    hostname: Optional[str] = None
    identifier: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    seq_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        data: Dict[str, Any] = {
            "seq_id": self.seq_id,
            "time_usec": self.time_usec,
            "message": self.message,
        }
        if self.priority is not None:
            data["priority"] = self.priority
        if self.hostname is not None:
            data["hostname"] = self.hostname
        if self.identifier is not None:
            data["identifier"] = self.identifier
        if self.fields:
            data["fields"] = dict(self.fields)
        return data

    def to_json(self) -> str:
        """Serialize to the wire payload (indented JSON)."""
        return json.dumps(self.to_dict(), indent=2, default=str)

    def wire_size(self) -> int:
        """Upper bound of the to_json() payload size in UTF-8 bytes."""
        data = self.to_dict()
        data["seq_id"] = _MAX_SEQ_ID
        return len(json.dumps(data, indent=2, default=str).encode("utf-8"))

    @classmethod
    def from_journal_entry(cls, entry: Dict[str, Any]) -> Record:
        """Build a record from one ``journalctl -o json`` object.

        Args:
            entry: Parsed journal entry

        Returns:
            Record with promoted fields filled in

        Raises:
            ValueError: If the entry has no usable realtime timestamp
            TypeError: If PRIORITY or an array MESSAGE has the wrong shape
        """
        raw_ts = entry.get("__REALTIME_TIMESTAMP")
        try:
            time_usec = int(raw_ts)
        except (TypeError, ValueError):
            raise ValueError(f"Journal entry has invalid __REALTIME_TIMESTAMP: {raw_ts!r}")

        priority = entry.get("PRIORITY")
        identifier = entry.get("SYSLOG_IDENTIFIER")
        if identifier is None:
            identifier = entry.get("_COMM")

        extra = {
            key: value
            for key, value in entry.items()
            if key not in _PROMOTED_FIELDS and not key.startswith("__")
        }

        return cls(
            time_usec=time_usec,
            message=_decode_message(entry.get("MESSAGE")),
            priority=int(priority) if priority is not None else None,
            hostname=entry.get("_HOSTNAME"),
            identifier=identifier,
            fields=extra,
        )


def _decode_message(value: Any) -> str:
    # journalctl emits non-UTF-8 or binary messages as an array of byte values
    if value is None:
        return ""
    if isinstance(value, list):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def parse_journal_lines(lines: Sequence[str]) -> List[Record]:
    """Parse journal JSON lines, skipping ones that cannot be decoded."""
    records = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
            if not isinstance(entry, dict):
                raise ValueError(f"expected a JSON object, got {type(entry).__name__}")
            records.append(Record.from_journal_entry(entry))
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping undecodable journal line: {e}")
    return records
