"""
Journal repeater - Main entry point.

Reads ``journalctl -o json`` output from stdin, groups entries into
batches and delivers each batch to one CloudWatch Logs stream:

    journalctl -o json -f | python -m shipper.journal_repeater

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Batches are delivered one at a time, in input order
    - A failed batch is logged and dropped; later batches still ship
    - A batch never exceeds the configured record count or payload bytes
    - An entry too large for a single event is logged and skipped
    - On shutdown the partial batch is flushed before exit

How to change safely:
    - Keep batch delivery sequential; the repeater token depends on it
    - Test shutdown with a slow sink
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import stat
import sys
from typing import AsyncIterator, List, Optional, TextIO

import json_log_formatter

from .config import EVENT_OVERHEAD_BYTES, MAX_EVENT_BYTES, ShipperConfig
from .records import Record, parse_journal_lines
from .repeater import DeliveryError, DeliveryRepeater
from .sink import SinkClient, create_sink_client

logger = logging.getLogger(__name__)

# journald entries with large binary fields can exceed the asyncio default
_STDIN_LINE_LIMIT = 16 * 1024 * 1024


def setup_logging(config: ShipperConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Process configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # stdout may be the journal we are reading from; keep diagnostics on stderr
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


async def stdin_lines(stream: TextIO = sys.stdin) -> AsyncIterator[str]:
    """Yield lines from stdin without blocking the event loop.

    Pipes, terminals and sockets are read through the loop's pipe
    transport. That transport rejects a regular file (``< saved.json``), so
    one is read in a worker thread instead.
    """
    loop = asyncio.get_running_loop()

    if stat.S_ISREG(os.fstat(stream.fileno()).st_mode):
        raw = getattr(stream, "buffer", stream)
        while True:
            line = await loop.run_in_executor(None, raw.readline)
            if not line:
                break
            if isinstance(line, bytes):
                line = line.decode("utf-8", errors="replace")
            yield line
        return

    reader = asyncio.StreamReader(limit=_STDIN_LINE_LIMIT)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, stream)

    while True:
        line = await reader.readline()
        if not line:
            break
        yield line.decode("utf-8", errors="replace")


class Shipper:
    """Journal-to-sink pipeline.

    Owns the sink client lifecycle and a single DeliveryRepeater.

    Attributes:
        config: Process configuration
        sink: Sink client (created from config if not provided)
        repeater: Repeater bound to the configured stream
        shipped_records: Records in batches that were delivered
        failed_batches: Batches whose delivery failed
        dropped_records: Entries too large to ever be accepted by the sink

    Example:
        >>> shipper = Shipper(config)
        >>> failed = await shipper.run()
    """

    def __init__(self, config: ShipperConfig, sink: Optional[SinkClient] = None) -> None:
        self.config = config
        self.sink = sink or create_sink_client(config.sink)
        self.repeater = DeliveryRepeater.from_config(self.sink, config.repeater)
        self.shipped_records = 0
        self.failed_batches = 0
        self.dropped_records = 0
        self._shutdown_event = asyncio.Event()

    async def run(self, lines: Optional[AsyncIterator[str]] = None) -> int:
        """Ship lines until EOF or shutdown.

        Args:
            lines: Source of journal JSON lines (stdin if not given)

        Returns:
            Number of batches that failed
        """
        logger.info("Starting journal repeater")
        self.config.log_config()

        await self.sink.connect()
        batch_size = self.config.repeater.batch_size
        batch_bytes = self.config.repeater.batch_bytes
        event_limit = min(MAX_EVENT_BYTES, batch_bytes)
        pending: List[Record] = []
        pending_bytes = 0

        try:
            async for line in self._until_shutdown(lines or stdin_lines()):
                for record in parse_journal_lines([line]):
                    size = record.wire_size() + EVENT_OVERHEAD_BYTES
                    if size > event_limit:
                        self._drop(record, size, event_limit)
                        continue
                    if pending and pending_bytes + size > batch_bytes:
                        await self._deliver(pending)
                        pending, pending_bytes = [], 0
                    pending.append(record)
                    pending_bytes += size
                    if len(pending) >= batch_size:
                        await self._deliver(pending)
                        pending, pending_bytes = [], 0

            if pending:
                await self._deliver(pending)
        finally:
            await self.repeater.close()
            await self.sink.close()

        logger.info(
            "Journal repeater stopped",
            extra={
                "shipped_records": self.shipped_records,
                "failed_batches": self.failed_batches,
                "dropped_records": self.dropped_records,
            },
        )
        return self.failed_batches

    def request_shutdown(self) -> None:
        """Stop reading input; the partial batch is still delivered."""
        self._shutdown_event.set()

    async def _deliver(self, batch: List[Record]) -> None:
        try:
            await self.repeater.append(batch)
        except DeliveryError as e:
            self.failed_batches += 1
            logger.error(
                f"Batch delivery failed: {e}",
                extra={"phase": e.phase.value, "records": len(batch)},
            )
            return
        self.shipped_records += len(batch)

    def _drop(self, record: Record, size: int, limit: int) -> None:
        self.dropped_records += 1
        logger.error(
            "Dropping journal entry larger than the event size limit",
            extra={"time_usec": record.time_usec, "bytes": size, "limit": limit},
        )

    async def _until_shutdown(self, lines: AsyncIterator[str]) -> AsyncIterator[str]:
        iterator = lines.__aiter__()
        stop = asyncio.ensure_future(self._shutdown_event.wait())
        try:
            while True:
                next_line = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait(
                    {next_line, stop}, return_when=asyncio.FIRST_COMPLETED
                )
                if next_line not in done:
                    next_line.cancel()
                    logger.info("Shutdown requested, flushing pending records")
                    return
                try:
                    line = next_line.result()
                except StopAsyncIteration:
                    return
                yield line
        finally:
            stop.cancel()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ShipperConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    shipper = Shipper(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        shipper.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        failed = loop.run_until_complete(shipper.run())
    finally:
        loop.close()

    sys.exit(1 if failed or shipper.dropped_records else 0)


if __name__ == "__main__":
    main()
