"""
Event bus implementation using Redis pub/sub.

Settlement outcomes are announced on the bus so other services (the web
frontend, analytics) can react without polling the ledger.
"""
import json
from dataclasses import asdict, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import redis.asyncio as redis


class EventEncoder(json.JSONEncoder):
    """Custom JSON encoder for event payloads."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if is_dataclass(obj) and not isinstance(obj, type):
            return asdict(obj)
        return super().default(obj)


def encode_event(event: dict[str, Any] | Any) -> str:
    if is_dataclass(event) and not isinstance(event, type):
        event = asdict(event)
    return json.dumps(event, cls=EventEncoder)


class EventBus:
    """Redis-backed publisher for settlement events.

    Usage:
        bus = EventBus(redis_url="redis://localhost:6379")
        await bus.connect()
        await bus.publish("wager.settled", {"wager_id": "w-1"})
    """

    def __init__(self, redis_url: str = "redis://localhost:6379") -> None:
        self._redis_url = redis_url
        self._redis: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.close()
        self._redis = None

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    async def publish(self, channel: str, event: dict[str, Any] | Any) -> None:
        """Publish event to channel.

        Args:
            channel: Channel name (e.g., "wager.settled")
            event: Event data (dict or dataclass)
        """
        if not self._redis:
            raise RuntimeError("EventBus not connected")
        await self._redis.publish(channel, encode_event(event))
