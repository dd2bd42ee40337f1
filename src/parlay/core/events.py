"""
Lifecycle event publishing over Redis pub/sub.

Handlers announce what they committed (bet.filled, bet.settled,
position.won, fee.failed, ...) for notifiers and dashboards listening on
the same Redis. Parlay only publishes. Settlement never waits on a reader,
and a dead bus costs events, not correctness.

Every message is a JSON envelope:
    {"type": "position.won", "emitted_at": "2026-...Z", "data": {...}}
"""
import json
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import redis.asyncio as redis
import structlog

log = structlog.get_logger()


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def encode_event(channel: str, payload: Any) -> str:
    """Wrap payload (a dict or an event dataclass) in the envelope."""
    if is_dataclass(payload) and not isinstance(payload, type):
        payload = asdict(payload)
    envelope = {
        "type": channel,
        "emitted_at": datetime.now(timezone.utc).isoformat(),
        "data": payload,
    }
    return json.dumps(envelope, default=_json_default)


class EventBus:
    """Publisher side of the Redis event channel.

    Usage:
        bus = EventBus(redis_url="redis://localhost:6379")
        await bus.connect()
        await bus.publish("position.won", PositionEvent.from_position(position))
        await bus.disconnect()
    """

    def __init__(self, redis_url: str = "redis://localhost:6379") -> None:
        self._redis_url = redis_url
        self._redis: Optional[redis.Redis] = None
        self._published = 0
        self._log = log.bind(component="event_bus")

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    @property
    def published(self) -> int:
        return self._published

    async def connect(self) -> None:
        """Open the connection and ping it.

        Raises:
            redis.RedisError: Redis is unreachable; the bus stays disconnected.
        """
        client = redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        self._redis = client

    async def disconnect(self) -> None:
        client, self._redis = self._redis, None
        if client is not None:
            await client.aclose()

    async def publish(self, channel: str, payload: Any) -> int:
        """Publish to channel.

        Returns:
            Number of subscribers that received the message.

        Raises:
            RuntimeError: If the bus is not connected.
        """
        if self._redis is None:
            raise RuntimeError("EventBus not connected")
        receivers = await self._redis.publish(channel, encode_event(channel, payload))
        self._published += 1
        return receivers


async def publish_quietly(
    event_bus: Optional[EventBus],
    channel: str,
    payload: Any,
) -> None:
    """Publish a lifecycle event; log rather than raise if that fails.

    Call only after the records the event describes have been written.
    """
    if event_bus is None or not event_bus.is_connected:
        log.debug("event_not_published", channel=channel, reason="bus_unavailable")
        return
    try:
        await event_bus.publish(channel, payload)
    except Exception as e:
        log.warning("event_publish_failed", channel=channel, error=str(e))
