"""
Process-wide sequence annotation for shipped records.

Every record handed to a repeater is stamped with the next value of a
monotonic counter before it is serialized. The value is diagnostic only:
the sink orders events by timestamp and ordering token, never by this id.

Invariants:
    - Values are strictly increasing and never reused within a process
    - The counter is shared by every repeater that does not inject its own
    - Values consumed by a failed batch are not returned

How to change safely:
    - Keep reserve() atomic; repeaters may run on different threads
    - Never reset the default counter outside of tests
"""

from __future__ import annotations

import threading


class SequenceCounter:
    """Monotonic counter safe for use from multiple threads.

    Example:
        >>> counter = SequenceCounter()
        >>> list(counter.reserve(3))
        [1, 2, 3]
        >>> counter.current
        3
    """

    def __init__(self, start: int = 0) -> None:
        self._value = start
        self._lock = threading.Lock()

    @property
    def current(self) -> int:
        """Last value handed out (0 if none yet)."""
        with self._lock:
            return self._value

    def reserve(self, count: int) -> range:
        """Reserve ``count`` consecutive values in one step.

        Args:
            count: Number of values to reserve

        Returns:
            Range of the reserved values, in increasing order
        """
        if count < 0:
            raise ValueError(f"count must be non-negative, got {count}")
        with self._lock:
            first = self._value + 1
            self._value += count
            return range(first, self._value + 1)


_process_counter = SequenceCounter()


def process_counter() -> SequenceCounter:
    """Counter shared by all repeaters in this process."""
    return _process_counter
