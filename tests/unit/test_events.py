"""
Unit tests for the EventBus, the event envelope and lifecycle payloads.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from parlay.core.events import EventBus, encode_event, publish_quietly
from parlay.domain.events import BetEvent, FeeEvent, PositionEvent
from parlay.domain.status import BetStatus, PositionStatus
from tests.factories import make_bet, make_position


class TestEnvelope:
    def test_wraps_payload_with_type_and_time(self):
        envelope = json.loads(encode_event("bet.filled", {"bet_id": "bet_1"}))

        assert envelope["type"] == "bet.filled"
        assert envelope["data"] == {"bet_id": "bet_1"}
        assert datetime.fromisoformat(envelope["emitted_at"]).tzinfo is not None

    def test_encodes_decimal_datetime_and_enum(self):
        payload = {
            "amount": Decimal("1.50"),
            "at": datetime(2026, 1, 1, tzinfo=timezone.utc),
            "status": BetStatus.FILLED,
        }
        data = json.loads(encode_event("bet.filled", payload))["data"]
        assert data == {
            "amount": "1.50",
            "at": "2026-01-01T00:00:00+00:00",
            "status": "FILLED",
        }

    def test_encodes_event_dataclass(self):
        event = FeeEvent(
            position_id="pos_1",
            wallet_address="0xabc",
            fee_amount="2.00",
            success=True,
            timestamp="2026-01-01T00:00:00+00:00",
        )
        data = json.loads(encode_event("fee.collected", event))["data"]
        assert data["fee_amount"] == "2.00"

    def test_rejects_unknown_types(self):
        with pytest.raises(TypeError):
            encode_event("bet.filled", {"handle": object()})


class TestLifecyclePayloads:
    def test_bet_event_from_bet(self):
        bet = make_bet(status=BetStatus.SETTLED, actual_payout="200.000000")
        event = BetEvent.from_bet(bet)
        assert event.status == "SETTLED"
        assert event.actual_payout == "200.000000"
        assert event.sequence == 1

    def test_position_event_carries_reason(self):
        position = make_position(
            status=PositionStatus.FAILED, failure_reason="Leg 2 UNFILLED: nothing matched"
        )
        event = PositionEvent.from_position(position)
        assert event.status == "FAILED"
        assert event.reason.startswith("Leg 2")


class TestEventBus:
    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        client.publish = AsyncMock(return_value=2)
        client.aclose = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self):
        bus = EventBus()
        with pytest.raises(RuntimeError):
            await bus.publish("bet.filled", {})

    @pytest.mark.asyncio
    async def test_connect_publish_disconnect(self, redis_client):
        with patch("parlay.core.events.redis.from_url", return_value=redis_client):
            bus = EventBus("redis://test:6379")
            await bus.connect()
            assert bus.is_connected

            receivers = await bus.publish("position.won", {"position_id": "pos_1"})
            channel, message = redis_client.publish.call_args.args
            assert receivers == 2
            assert channel == "position.won"
            assert json.loads(message)["data"] == {"position_id": "pos_1"}
            assert bus.published == 1

            await bus.disconnect()
            assert not bus.is_connected
            redis_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_ping_leaves_bus_disconnected(self, redis_client):
        redis_client.ping.side_effect = ConnectionError("refused")
        with patch("parlay.core.events.redis.from_url", return_value=redis_client):
            bus = EventBus()
            with pytest.raises(ConnectionError):
                await bus.connect()

        assert not bus.is_connected
        redis_client.aclose.assert_awaited_once()


class TestPublishQuietly:
    @pytest.mark.asyncio
    async def test_no_bus(self):
        await publish_quietly(None, "bet.filled", {})

    @pytest.mark.asyncio
    async def test_disconnected_bus_is_skipped(self, mock_event_bus):
        mock_event_bus.is_connected = False
        await publish_quietly(mock_event_bus, "bet.filled", {})
        mock_event_bus.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_publish_failure_is_swallowed(self, mock_event_bus):
        mock_event_bus.publish.side_effect = ConnectionError("redis gone")
        await publish_quietly(mock_event_bus, "bet.filled", {"a": 1})
        mock_event_bus.publish.assert_awaited_once()
