"""Transport tests."""

import asyncio
from collections import defaultdict

import pytest

from crmflow.contracts import EngineMessage
from crmflow.transports import ACTIONS_TOPIC, LIFECYCLE_TOPIC
from crmflow.transports.inmemory import InMemoryTransport
from crmflow.transports.redis import RedisTransport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()

    message = EngineMessage(
        correlation_id="test-123",
        tenant_id="acme",
        event="deal.updated",
        payload={"test": "data"},
    )
    await transport.publish("test_topic", message)

    message_received = False
    async for raw_msg, received_msg in transport.subscribe("test_topic"):
        assert received_msg.correlation_id == "test-123"
        assert received_msg.payload["test"] == "data"

        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received


@pytest.mark.asyncio
async def test_inmemory_transport_subscribe_stops_after_lifespan():
    transport = InMemoryTransport()

    received = [msg async for _, msg in transport.subscribe("empty", lifespan=0.1)]

    assert received == []


@pytest.mark.asyncio
async def test_published_messages_are_recorded_by_event_name():
    transport = InMemoryTransport()
    for name, topic in [
        ("workflow.execution.started", LIFECYCLE_TOPIC),
        ("rule.action.send_email", ACTIONS_TOPIC),
        ("workflow.execution.started", LIFECYCLE_TOPIC),
    ]:
        await transport.publish(
            topic, EngineMessage(correlation_id="c", tenant_id="acme", event=name)
        )

    assert len(transport.events("workflow.execution.started")) == 2
    assert [topic for topic, _ in transport.published] == [
        LIFECYCLE_TOPIC,
        ACTIONS_TOPIC,
        LIFECYCLE_TOPIC,
    ]


def test_engine_message_json_roundtrip():
    message = EngineMessage(
        correlation_id="c-1", tenant_id="acme", event="rule.executed", payload={"n": 1}
    )

    restored = EngineMessage.from_json(message.to_json())

    assert restored == message


@pytest.mark.asyncio
async def test_redis_transport_import():
    """Test Redis transport can be imported and configured without a server."""
    from crmflow.transports.redis import RedisTransport

    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert transport._queue("events") == "crmflow:events"
    assert transport._dead("events") == "crmflow:events:dead"


class FakeRedisLists:
    """Just enough of the redis list commands, index 0 being the LEFT end."""

    def __init__(self):
        self.lists = defaultdict(list)

    async def ping(self):
        return True

    async def lpush(self, name, value):
        self.lists[name].insert(0, value)

    async def lmove(self, first, second, src="LEFT", dest="RIGHT"):
        if not self.lists[first]:
            return None
        value = self.lists[first].pop(-1 if src == "RIGHT" else 0)
        if dest == "LEFT":
            self.lists[second].insert(0, value)
        else:
            self.lists[second].append(value)
        return value

    async def blmove(self, first, second, timeout, src="LEFT", dest="RIGHT"):
        value = await self.lmove(first, second, src=src, dest=dest)
        if value is None:
            await asyncio.sleep(0.01)
        return value

    async def lrem(self, name, count, value):
        if value in self.lists[name]:
            self.lists[name].remove(value)


@pytest.fixture
def redis_transport():
    transport = RedisTransport(prefix="t")
    transport._redis = FakeRedisLists()
    return transport


def _event(correlation_id):
    return EngineMessage(correlation_id=correlation_id, tenant_id="acme", event="crm.event")


@pytest.mark.asyncio
async def test_redis_delivery_stays_in_processing_until_acked(redis_transport):
    lists = redis_transport._redis.lists
    await redis_transport.publish("events", _event("e-1"))
    await redis_transport.publish("events", _event("e-2"))

    stream = redis_transport.subscribe("events", lifespan=1)
    delivery, message = await stream.__anext__()

    assert message.correlation_id == "e-1"
    assert lists["t:events:processing"] == [delivery.payload]
    await redis_transport.ack(delivery)
    assert lists["t:events:processing"] == []
    _, second = await stream.__anext__()
    assert second.correlation_id == "e-2"
    await stream.aclose()


@pytest.mark.asyncio
async def test_redis_nack_requeues_or_dead_letters(redis_transport):
    lists = redis_transport._redis.lists
    await redis_transport.publish("events", _event("e-1"))
    await redis_transport._redis.lpush("t:events", "not json")

    received = []
    async for delivery, message in redis_transport.subscribe("events", lifespan=0.2):
        received.append(message.correlation_id)
        await redis_transport.nack(delivery, requeue=False)

    assert received == ["e-1"]
    assert len(lists["t:events:dead"]) == 2
    assert "not json" in lists["t:events:dead"]
    assert lists["t:events"] == [] and lists["t:events:processing"] == []

    await redis_transport.publish("events", _event("e-2"))
    stream = redis_transport.subscribe("events", lifespan=1)
    delivery, _ = await stream.__anext__()
    await redis_transport.nack(delivery)
    assert lists["t:events"] == [delivery.payload]
    await stream.aclose()


@pytest.mark.asyncio
async def test_redis_subscribe_recovers_unacked_deliveries(redis_transport):
    lists = redis_transport._redis.lists
    lists["t:events:processing"].append(_event("orphan").to_json())

    stream = redis_transport.subscribe("events", lifespan=1)
    _, message = await stream.__anext__()

    assert message.correlation_id == "orphan"
    await stream.aclose()
