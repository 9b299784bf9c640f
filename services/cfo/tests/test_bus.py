"""
Tests for the agent message bus client, using a mocked JetStream context.

@module tests.test_bus
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.bus import AgentMessage, MessageBus, MessagePriority, MessageType, inbox_subject


def _bus_with_js():
    bus = MessageBus("cfo", supervisor_id="nova-supervisor")
    bus.js = MagicMock()
    bus.js.publish = AsyncMock()
    bus.js.subscribe = AsyncMock()
    return bus


def _raw(data: bytes):
    msg = MagicMock()
    msg.data = data
    msg.ack = AsyncMock()
    return msg


async def _subscribed(bus, handler):
    await bus.subscribe(handler)
    return bus.js.subscribe.await_args.kwargs["cb"]


class TestAgentMessage:

    def test_expiry(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        message = AgentMessage(from_agent="a", to_agent="b", type=MessageType.INTEL,
                               expires_at=now + timedelta(minutes=5))

        assert not message.is_expired(now)
        assert message.is_expired(now + timedelta(minutes=6))
        assert not AgentMessage(from_agent="a", to_agent="b", type=MessageType.INTEL).is_expired()


class TestSend:

    @pytest.mark.asyncio
    async def test_dropped_without_connection(self):
        bus = MessageBus("cfo")

        message = await bus.send("guardian", MessageType.REQUEST, {"action": "watch"})

        assert not bus.connected
        assert message.to_agent == "guardian"

    @pytest.mark.asyncio
    async def test_publishes_to_inbox(self):
        bus = _bus_with_js()

        sent = await bus.send("guardian", MessageType.REQUEST, {"action": "watch"}, MessagePriority.HIGH,
                              expires_in=timedelta(minutes=10))

        subject, data = bus.js.publish.await_args[0]
        assert subject == "cfo.agents.guardian" == inbox_subject("guardian")
        body = json.loads(data)
        assert body["id"] == sent.id
        assert body["from_agent"] == "cfo"
        assert body["type"] == "request"
        assert body["priority"] == "high"
        assert body["expires_at"] is not None

    @pytest.mark.asyncio
    async def test_report_to_supervisor(self):
        bus = _bus_with_js()

        message = await bus.report_to_supervisor(MessageType.REPORT, {"trace_id": "t-1"})

        assert message.to_agent == "nova-supervisor"
        assert message.payload["source"] == "cfo"
        assert "timestamp" in message.payload
        assert message.payload["trace_id"] == "t-1"


class TestSubscribe:

    @pytest.mark.asyncio
    async def test_durable_inbox(self):
        bus = _bus_with_js()
        await bus.subscribe(AsyncMock())

        args, kwargs = bus.js.subscribe.await_args
        assert args[0] == "cfo.agents.cfo"
        assert kwargs["durable"] == "cfo-inbox"
        assert kwargs["manual_ack"] is True

    @pytest.mark.asyncio
    async def test_delivers_and_acks(self):
        bus = _bus_with_js()
        handler = AsyncMock()
        callback = await _subscribed(bus, handler)
        incoming = AgentMessage(from_agent="scout", to_agent="cfo", type=MessageType.INTEL,
                                payload={"market_condition": "bearish"})
        raw = _raw(incoming.model_dump_json().encode())

        await callback(raw)

        [delivered] = handler.await_args[0]
        assert delivered.payload == {"market_condition": "bearish"}
        raw.ack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_malformed_and_expired_dropped(self):
        bus = _bus_with_js()
        handler = AsyncMock()
        callback = await _subscribed(bus, handler)
        expired = AgentMessage(from_agent="scout", to_agent="cfo", type=MessageType.INTEL,
                               expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))

        garbage = _raw(b"{not json")
        stale = _raw(expired.model_dump_json().encode())
        await callback(garbage)
        await callback(stale)

        handler.assert_not_awaited()
        garbage.ack.assert_awaited_once()
        stale.ack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_handler_failure_still_acked(self):
        bus = _bus_with_js()
        callback = await _subscribed(bus, AsyncMock(side_effect=RuntimeError("handler broke")))
        raw = _raw(AgentMessage(from_agent="a", to_agent="cfo", type=MessageType.COMMAND).model_dump_json().encode())

        await callback(raw)

        raw.ack.assert_awaited_once()
