"""
Event publisher interface for order notifications.

Services receive a publisher at construction and call ``publish`` after
their transaction commits. Delivery is best-effort: a publisher must never
raise into the caller, so a notification outage cannot fail an order.
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Sequence

from cylinderhub.cache.redis_client import RedisClient
from cylinderhub.core.logging import get_logger

logger = get_logger(__name__)

CHANNEL_PREFIX = "cylinderhub.events"


class EventPublisher(Protocol):
    async def publish(
        self,
        event: str,
        payload: dict[str, Any],
        audiences: Sequence[str] = (),
    ) -> None:
        ...


def _envelope(event: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event": event,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }


class LoggingEventPublisher:
    """Writes events to the structured log. Used when Redis is disabled."""

    async def publish(
        self,
        event: str,
        payload: dict[str, Any],
        audiences: Sequence[str] = (),
    ) -> None:
        logger.info("Domain event", event_name=event, audiences=list(audiences), **payload)


class RedisEventPublisher:
    """
    Publishes events on Redis pub/sub, one channel per audience.

    Audiences are strings like ``buyer:<uuid>``, ``seller:<uuid>``,
    ``driver:<uuid>`` or ``admin``. Events without an audience go to the
    shared channel.
    """

    def __init__(self, client: RedisClient, channel_prefix: str = CHANNEL_PREFIX):
        self.client = client
        self.channel_prefix = channel_prefix

    async def publish(
        self,
        event: str,
        payload: dict[str, Any],
        audiences: Sequence[str] = (),
    ) -> None:
        message = json.dumps(_envelope(event, payload), default=str)
        channels = [f"{self.channel_prefix}.{a}" for a in audiences] or [self.channel_prefix]
        for channel in channels:
            try:
                await self.client.publish(channel, message)
            except Exception as e:
                logger.warning(
                    "Event publish failed",
                    event_name=event,
                    channel=channel,
                    error=str(e),
                    error_type=type(e).__name__,
                )


def order_audiences(
    buyer_id: Any,
    seller_id: Any,
    driver_id: Optional[Any] = None,
) -> list[str]:
    audiences = [f"buyer:{buyer_id}", f"seller:{seller_id}"]
    if driver_id is not None:
        audiences.append(f"driver:{driver_id}")
    return audiences
