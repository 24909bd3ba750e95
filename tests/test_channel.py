"""Tests for the cross-context channel and message validation."""

import asyncio

import pytest

from subtap.channel import Envelope, MessageChannel
from subtap.models import CapturedMessage, ReadyMessage, StatusMessage, parse_message


class TestMessageChannel:
    @pytest.mark.asyncio
    async def test_delivery_is_asynchronous(self):
        channel = MessageChannel()
        received = []
        channel.add_listener(received.append)

        channel.post({"kind": "ready"}, source="page")
        assert received == []

        await asyncio.sleep(0)
        assert received == [Envelope(source="page", data={"kind": "ready"})]
        assert channel.posted_count == 1

    @pytest.mark.asyncio
    async def test_message_without_listener_is_lost(self):
        channel = MessageChannel()
        channel.post({"kind": "ready"}, source="page")
        await asyncio.sleep(0)

        received = []
        channel.add_listener(received.append)
        await asyncio.sleep(0)

        assert received == []

    @pytest.mark.asyncio
    async def test_listener_attached_before_delivery_receives(self):
        channel = MessageChannel()
        received = []

        channel.post({"kind": "ready"}, source="page")
        channel.add_listener(received.append)
        await asyncio.sleep(0)

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self):
        channel = MessageChannel()
        received = []

        def broken(envelope):
            raise RuntimeError("boom")

        channel.add_listener(broken)
        channel.add_listener(received.append)
        channel.post({"kind": "ready"}, source="page")
        await asyncio.sleep(0)

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_listeners_are_deduplicated(self):
        channel = MessageChannel()
        received = []
        channel.add_listener(received.append)
        channel.add_listener(received.append)
        assert channel.listener_count == 1

        channel.remove_listener(received.append)
        channel.remove_listener(received.append)
        assert channel.listener_count == 0


class TestParseMessage:
    def test_ready(self):
        message = parse_message(ReadyMessage().model_dump(mode="json"))
        assert isinstance(message, ReadyMessage)

    def test_captured_round_trips_payload(self):
        data = {
            "kind": "captured",
            "payload": {
                "source_url": "https://www.youtube.com/api/timedtext?v=dQw4w9WgXcQ&lang=en",
                "raw_content": "<transcript/>",
                "video_id": "dQw4w9WgXcQ",
                "language_code": "en",
                "encoding_format": "unknown",
                "captured_at": 1700000000000,
            },
        }
        message = parse_message(data)

        assert isinstance(message, CapturedMessage)
        assert message.payload.cache_key == "dQw4w9WgXcQ_en"
        assert message.payload.captured_at == 1700000000000

    def test_status(self):
        message = parse_message({"kind": "status", "active": True, "intercepted": False})
        assert isinstance(message, StatusMessage)
        assert message.capture_count == 0

    @pytest.mark.parametrize(
        "data",
        [
            None,
            "ready",
            ["ready"],
            {},
            {"kind": "SUBTITLE_DATA_INTERCEPTED"},
            {"kind": "captured"},
            {"kind": "captured", "payload": {"raw_content": "x"}},
            {"kind": "status", "active": "maybe", "intercepted": False},
        ],
    )
    def test_unknown_or_malformed_is_ignored(self, data):
        assert parse_message(data) is None
