"""
Test suite for order event publishing.
"""

import json
import uuid
from unittest.mock import AsyncMock

from redis.exceptions import ConnectionError as RedisConnectionError

from cylinderhub.services.events.publisher import (
    CHANNEL_PREFIX,
    LoggingEventPublisher,
    RedisEventPublisher,
    order_audiences,
)


class TestOrderAudiences:
    def test_buyer_and_seller(self):
        buyer, seller = uuid.uuid4(), uuid.uuid4()

        assert order_audiences(buyer, seller) == [f"buyer:{buyer}", f"seller:{seller}"]

    def test_includes_driver_when_bound(self):
        driver = uuid.uuid4()

        audiences = order_audiences(uuid.uuid4(), uuid.uuid4(), driver)

        assert audiences[-1] == f"driver:{driver}"


class TestRedisEventPublisher:
    async def test_publishes_envelope_per_audience(self):
        client = AsyncMock()
        publisher = RedisEventPublisher(client)

        await publisher.publish(
            "order.assigned", {"order_number": "48213"}, ["buyer:1", "driver:2"]
        )

        channels = [c.args[0] for c in client.publish.await_args_list]
        assert channels == [f"{CHANNEL_PREFIX}.buyer:1", f"{CHANNEL_PREFIX}.driver:2"]
        envelope = json.loads(client.publish.await_args_list[0].args[1])
        assert envelope["event"] == "order.assigned"
        assert envelope["payload"] == {"order_number": "48213"}
        assert "occurred_at" in envelope

    async def test_no_audience_uses_shared_channel(self):
        client = AsyncMock()

        await RedisEventPublisher(client, channel_prefix="fulfillment").publish("ping", {})

        client.publish.assert_awaited_once()
        assert client.publish.await_args.args[0] == "fulfillment"

    async def test_publish_failure_is_swallowed(self):
        client = AsyncMock()
        client.publish.side_effect = RedisConnectionError("down")
        publisher = RedisEventPublisher(client)

        await publisher.publish("order.cancelled", {}, ["buyer:1", "seller:2"])

        assert client.publish.await_count == 2


class TestLoggingEventPublisher:
    async def test_publish_does_not_raise(self):
        await LoggingEventPublisher().publish(
            "order.created", {"order_id": str(uuid.uuid4())}, ["admin"]
        )
