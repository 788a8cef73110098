"""
Unit tests for event payloads and the Redis event bus.

Tests cover:
- Settlement event creation and serialization
- JSON encoding of Decimal, datetime, Enum and dataclass values
- EventBus publish/connect behavior against a mocked Redis client
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from arbiter.core.events import EventBus, encode_event
from arbiter.core.retry import QuoteUnavailable
from arbiter.domain.events import (
    SettlementFailedEvent,
    WagerAcceptedEvent,
    WagerCancelledEvent,
    WagerSettledEvent,
)
from arbiter.domain.fees import FeeSchedule, OutcomeKind, PayoutCalculator
from arbiter.domain.wager import WagerStatus

STAMP = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestEventPayloads:
    """Tests for event dataclasses."""

    def test_settled_event_from_breakdown(self):
        breakdown = PayoutCalculator(FeeSchedule()).win(Decimal("1"))
        event = WagerSettledEvent.create(
            wager_id="w-1",
            wager_type="crypto",
            status="resolved",
            trigger="fine_sweep",
            breakdown=breakdown,
            signature="sig",
            winner_id="user-alice",
            resolution_value="105",
            timestamp=STAMP,
        )

        data = event.to_dict()
        assert data["outcome"] == "win"
        assert data["breakdown"]["winner_payout"] == "1.919995000"
        assert data["winner_id"] == "user-alice"
        assert data["simulated"] is False
        assert data["timestamp"] == "2026-03-01T12:00:00+00:00"

    def test_accepted_event_stringifies_amount(self):
        event = WagerAcceptedEvent.create(
            wager_id="w-1",
            wager_type="sports",
            creator_id="a",
            acceptor_id="b",
            amount=Decimal("2.5"),
            signature="sig",
            simulated=True,
        )
        assert event.to_dict()["amount"] == "2.5"
        assert event.to_dict()["simulated"] is True

    def test_failed_event_records_error_type(self):
        event = SettlementFailedEvent.create(
            wager_id="w-1",
            operation="resolve",
            error=QuoteUnavailable("feed down"),
            retryable=True,
        )
        data = event.to_dict()
        assert data["error_type"] == "QuoteUnavailable"
        assert data["reason"] == "feed down"
        assert data["retryable"] is True

    def test_cancelled_event(self):
        event = WagerCancelledEvent.create("w-1", "crypto", "Wallet111", timestamp=STAMP)
        assert event.to_dict() == {
            "wager_id": "w-1",
            "wager_type": "crypto",
            "cancelled_by": "Wallet111",
            "timestamp": STAMP.isoformat(),
        }


class TestEncoding:
    """Tests for encode_event."""

    def test_encodes_rich_types(self):
        payload = {
            "amount": Decimal("0.000005"),
            "at": STAMP,
            "status": WagerStatus.RESOLVED,
            "kind": OutcomeKind.DRAW,
        }
        decoded = json.loads(encode_event(payload))
        assert decoded == {
            "amount": "0.000005",
            "at": "2026-03-01T12:00:00+00:00",
            "status": "resolved",
            "kind": "draw",
        }

    def test_encodes_dataclass(self):
        event = WagerCancelledEvent.create("w-1", "crypto", "Wallet111", timestamp=STAMP)
        assert json.loads(encode_event(event))["cancelled_by"] == "Wallet111"


class TestEventBus:
    """Tests for EventBus against a mocked Redis client."""

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self):
        bus = EventBus()
        assert bus.is_connected is False
        with pytest.raises(RuntimeError):
            await bus.publish("wager.settled", {"wager_id": "w-1"})

    @pytest.mark.asyncio
    async def test_connect_publish_disconnect(self):
        client = MagicMock()
        client.ping = AsyncMock()
        client.publish = AsyncMock()
        client.close = AsyncMock()

        with patch("arbiter.core.events.redis.from_url", return_value=client) as from_url:
            bus = EventBus("redis://cache:6379/1")
            await bus.connect()
            await bus.publish("wager.settled", {"wager_id": "w-1", "amount": Decimal("1")})
            await bus.disconnect()

        from_url.assert_called_once_with("redis://cache:6379/1", encoding="utf-8", decode_responses=True)
        client.ping.assert_awaited_once()
        channel, message = client.publish.await_args.args
        assert channel == "wager.settled"
        assert json.loads(message) == {"wager_id": "w-1", "amount": "1"}
        client.close.assert_awaited_once()
        assert bus.is_connected is False
