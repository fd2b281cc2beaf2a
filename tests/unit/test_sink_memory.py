"""
Unit tests for the in-memory sink implementation.

Tests cover:
- Group and stream provisioning errors
- Token checking, including duplicate batch detection
- Token lookup
- Failure injection and the call log
"""

import pytest

from shipper.journal_repeater.sink import SinkClient
from shipper.journal_repeater.sink.base import InputEvent, SinkError, SinkErrorKind
from shipper.journal_repeater.sink.memory import InMemorySinkClient


def events(*messages):
    return [InputEvent(message=m, timestamp=1000 * i) for i, m in enumerate(messages)]


class TestInMemorySinkClient:
    """Tests for InMemorySinkClient."""

    @pytest.fixture
    def sink(self):
        return InMemorySinkClient()

    @pytest.fixture
    def stream(self, sink):
        """Sink with an empty app/web stream."""
        sink.seed_stream("app", "web")
        return sink

    def test_satisfies_protocol(self, sink):
        assert isinstance(sink, SinkClient)

    @pytest.mark.asyncio
    async def test_connect_disconnect(self, sink):
        assert not sink.is_connected

        await sink.connect()
        assert sink.is_connected

        await sink.close()
        assert not sink.is_connected

    @pytest.mark.asyncio
    async def test_append_to_missing_group(self, sink):
        with pytest.raises(SinkError) as exc_info:
            await sink.append_events("app", "web", None, events("a"))

        assert exc_info.value.kind is SinkErrorKind.NOT_FOUND
        assert exc_info.value.code == "ResourceNotFoundException"

    @pytest.mark.asyncio
    async def test_create_stream_requires_group(self, sink):
        with pytest.raises(SinkError) as exc_info:
            await sink.create_stream("app", "web")

        assert exc_info.value.kind is SinkErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_create_twice(self, stream):
        with pytest.raises(SinkError) as exc_info:
            await stream.create_stream("app", "web")
        assert exc_info.value.kind is SinkErrorKind.ALREADY_EXISTS

        with pytest.raises(SinkError) as exc_info:
            await stream.create_group("app")
        assert exc_info.value.kind is SinkErrorKind.ALREADY_EXISTS

    @pytest.mark.asyncio
    async def test_tokens_chain(self, stream):
        """Each append must present the token from the previous one."""
        t1 = await stream.append_events("app", "web", "", events("a"))
        t2 = await stream.append_events("app", "web", t1, events("b"))

        assert t1 != t2
        assert await stream.lookup_token("app", "web") == t2
        assert [e.message for e in stream.get_events("app", "web")] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_stale_token_rejected(self, stream):
        t1 = await stream.append_events("app", "web", None, events("a"))
        await stream.append_events("app", "web", t1, events("b"))

        with pytest.raises(SinkError) as exc_info:
            await stream.append_events("app", "web", t1, events("c"))

        assert exc_info.value.kind is SinkErrorKind.TOKEN_MISMATCH
        assert len(stream.get_events("app", "web")) == 2

    @pytest.mark.asyncio
    async def test_resent_batch_already_accepted(self, stream):
        """Same payload with the same old token is a duplicate."""
        batch = events("a", "b")
        await stream.append_events("app", "web", None, batch)

        with pytest.raises(SinkError) as exc_info:
            await stream.append_events("app", "web", None, batch)

        assert exc_info.value.kind is SinkErrorKind.ALREADY_ACCEPTED
        assert len(stream.get_events("app", "web")) == 2

    @pytest.mark.asyncio
    async def test_lookup_missing(self, sink, stream):
        assert await sink.lookup_token("other", "web") is None
        assert await sink.lookup_token("app", "missing") is None
        # Exists but never written
        assert await sink.lookup_token("app", "web") is None

    @pytest.mark.asyncio
    async def test_lookup_requires_exact_name(self, stream):
        await stream.create_stream("app", "web-2")
        await stream.append_events("app", "web-2", None, events("x"))

        assert await stream.lookup_token("app", "web") is None

    @pytest.mark.asyncio
    async def test_injected_failures_queue(self, sink):
        first = SinkError(SinkErrorKind.TRANSIENT, "one")
        second = SinkError(SinkErrorKind.FATAL, "two")
        sink.inject_failure("create_group", first)
        sink.inject_failure("create_group", second)

        with pytest.raises(SinkError) as exc_info:
            await sink.create_group("app")
        assert exc_info.value is first

        with pytest.raises(SinkError) as exc_info:
            await sink.create_group("app")
        assert exc_info.value is second

        await sink.create_group("app")
        assert sink.group_exists("app")
        assert len(sink.calls_to("create_group")) == 3

    def test_seed_stream(self, sink):
        head = sink.seed_stream("app", "web", events("a"))

        assert sink.stream_exists("app", "web")
        assert sink.head_token("app", "web") == head
        assert sink.calls == []
