"""
Journal repeater - ordered delivery of journal records to CloudWatch Logs.

This package ships batches of structured log records to a
sequence-token-ordered log sink:
- Records are stamped with a process-wide sequence id and serialized
- Each batch is appended with the stream's current ordering token
- Missing streams/groups are created on demand
- Stale tokens and duplicate deliveries are repaired with a token lookup

Architecture:
    ┌──────────────┐     ┌──────────────────┐     ┌──────────────────┐
    │  journalctl  │────▶│ DeliveryRepeater │────▶│    SinkClient    │
    │  (stdin)     │     │ token + recovery │     │ (CloudWatch Logs)│
    └──────────────┘     └──────────────────┘     └──────────────────┘

Invariants:
    - One repeater is bound to one log group/stream for its lifetime
    - Appends on a repeater are serialized
    - Each append() makes at most two append_events calls

How to change safely:
    - New sinks implement the SinkClient protocol in sink/base.py
    - Recovery changes must keep every path bounded to one retry
"""

from ._version import __version__
from .records import Record
from .repeater import (
    DeliveryError,
    DeliveryPhase,
    DeliveryRepeater,
    RepeaterClosedError,
    RepeaterError,
    StreamBinding,
)
from .sequence import SequenceCounter, process_counter

__all__ = [
    "__version__",
    "Record",
    "DeliveryRepeater",
    "DeliveryError",
    "DeliveryPhase",
    "RepeaterError",
    "RepeaterClosedError",
    "StreamBinding",
    "SequenceCounter",
    "process_counter",
]
