"""
Integration tests for the journal shipping pipeline.

Runs Shipper end to end against the in-memory sink: journal lines in,
ordered events in the provisioned stream out.
"""

import asyncio
import json
import logging
import os

import json_log_formatter
import pytest

from shipper.journal_repeater.config import (
    EVENT_OVERHEAD_BYTES,
    MAX_BATCH_BYTES,
    MAX_EVENT_BYTES,
    ObservabilityConfig,
    RepeaterConfig,
    ShipperConfig,
    SinkBackend,
    SinkConfig,
)
from shipper.journal_repeater.main import Shipper, setup_logging, stdin_lines
from shipper.journal_repeater.records import Record
from shipper.journal_repeater.sink.base import SinkError, SinkErrorKind
from shipper.journal_repeater.sink.memory import InMemorySinkClient

GROUP = "journal"
STREAM = "host-1"


def journal_line(i: int, message: str = "") -> str:
    return json.dumps(
        {
            "__REALTIME_TIMESTAMP": str(1_700_000_000_000_000 + i),
            "MESSAGE": message or f"entry {i}",
            "SYSLOG_IDENTIFIER": "app",
        }
    ) + "\n"


async def lines_from(items):
    for item in items:
        yield item


def make_config(batch_size: int = 2, batch_bytes: int = MAX_BATCH_BYTES) -> ShipperConfig:
    return ShipperConfig(
        sink=SinkConfig(backend=SinkBackend.MEMORY),
        repeater=RepeaterConfig(
            log_group_name=GROUP,
            log_stream_name=STREAM,
            batch_size=batch_size,
            batch_bytes=batch_bytes,
        ),
    )


class TestShipper:
    """Tests for Shipper."""

    @pytest.fixture
    def sink(self):
        return InMemorySinkClient()

    @pytest.mark.asyncio
    async def test_ships_all_entries_in_order(self, sink):
        shipper = Shipper(make_config(batch_size=2), sink=sink)
        lines = [journal_line(i) for i in range(5)]
        lines.insert(2, "garbage\n")

        failed = await shipper.run(lines_from(lines))

        assert failed == 0
        assert shipper.shipped_records == 5
        assert sink.group_exists(GROUP)
        messages = [json.loads(e.message)["message"] for e in sink.get_events(GROUP, STREAM)]
        assert messages == [f"entry {i}" for i in range(5)]
        # 3 batches: one provisioning round, then one append each
        assert len(sink.calls_to("append_events")) == 4
        assert not sink.is_connected

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_stop_pipeline(self, sink):
        sink.seed_stream(GROUP, STREAM)
        sink.inject_failure("append_events", SinkError(SinkErrorKind.FATAL, "denied"))
        shipper = Shipper(make_config(batch_size=2), sink=sink)

        failed = await shipper.run(lines_from([journal_line(i) for i in range(4)]))

        assert failed == 1
        assert shipper.shipped_records == 2
        messages = [json.loads(e.message)["message"] for e in sink.get_events(GROUP, STREAM)]
        assert messages == ["entry 2", "entry 3"]

    @pytest.mark.asyncio
    async def test_shutdown_flushes_partial_batch(self, sink):
        shipper = Shipper(make_config(batch_size=10), sink=sink)
        never = asyncio.Event()

        async def endless():
            for i in range(3):
                yield journal_line(i)
            await never.wait()

        asyncio.get_running_loop().call_later(0.05, shipper.request_shutdown)
        failed = await asyncio.wait_for(shipper.run(endless()), timeout=5.0)

        assert failed == 0
        assert len(sink.get_events(GROUP, STREAM)) == 3
        assert shipper.repeater.is_closed

    @pytest.mark.asyncio
    async def test_batches_split_by_payload_bytes(self, sink):
        """A batch is closed early when the next entry would overflow its bytes."""
        body = "x" * 1000
        size = (
            Record.from_journal_entry(json.loads(journal_line(0, body))).wire_size()
            + EVENT_OVERHEAD_BYTES
        )
        shipper = Shipper(make_config(batch_size=10, batch_bytes=2 * size + 1), sink=sink)

        failed = await shipper.run(lines_from([journal_line(i, body) for i in range(5)]))

        assert failed == 0
        assert shipper.shipped_records == 5
        # first batch is sent twice: once before and once after provisioning
        assert [c.event_count for c in sink.calls_to("append_events")] == [2, 2, 2, 1]
        for event in sink.get_events(GROUP, STREAM):
            assert len(event.message.encode("utf-8")) + EVENT_OVERHEAD_BYTES <= size

    @pytest.mark.asyncio
    async def test_oversized_entry_is_dropped(self, sink, caplog):
        """An entry over the per-event limit is skipped; its neighbours ship."""
        lines = [
            journal_line(0),
            journal_line(1, "y" * MAX_EVENT_BYTES),
            journal_line(2),
        ]
        shipper = Shipper(make_config(batch_size=10), sink=sink)

        failed = await shipper.run(lines_from(lines))

        assert failed == 0
        assert shipper.dropped_records == 1
        assert shipper.shipped_records == 2
        messages = [json.loads(e.message)["message"] for e in sink.get_events(GROUP, STREAM)]
        assert messages == ["entry 0", "entry 2"]
        dropped = [r for r in caplog.records if "event size limit" in r.getMessage()]
        assert len(dropped) == 1
        assert dropped[0].levelno == logging.ERROR

    @pytest.mark.asyncio
    async def test_reads_redirected_file(self, sink, tmp_path):
        """Input redirected from a regular file is read to EOF and shipped."""
        path = tmp_path / "journal.json"
        path.write_text("".join(journal_line(i) for i in range(3)))
        shipper = Shipper(make_config(batch_size=2), sink=sink)

        with open(path) as stream:
            failed = await shipper.run(stdin_lines(stream))

        assert failed == 0
        messages = [json.loads(e.message)["message"] for e in sink.get_events(GROUP, STREAM)]
        assert messages == ["entry 0", "entry 1", "entry 2"]


class TestStdinLines:
    """Tests for stdin_lines."""

    @pytest.mark.asyncio
    async def test_regular_file(self, tmp_path):
        path = tmp_path / "journal.json"
        path.write_bytes(b"first\n\xffsecond\nlast")

        with open(path) as stream:
            lines = [line async for line in stdin_lines(stream)]

        assert lines == ["first\n", "\ufffdsecond\n", "last"]

    @pytest.mark.asyncio
    async def test_pipe(self):
        read_fd, write_fd = os.pipe()
        with os.fdopen(write_fd, "wb") as writer:
            writer.write(b"one\ntwo\n")

        with os.fdopen(read_fd, "r") as stream:
            lines = [line async for line in stdin_lines(stream)]

        assert lines == ["one\n", "two\n"]


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        config = make_config()

        setup_logging(config)

        root = logging.getLogger()
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert root.level == logging.INFO
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_text_format(self):
        config = ShipperConfig(
            repeater=RepeaterConfig(log_group_name=GROUP),
            observability=ObservabilityConfig(log_level="debug", log_format="text"),
        )

        setup_logging(config)

        root = logging.getLogger()
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert root.level == logging.DEBUG
