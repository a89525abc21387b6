"""RedisPubSub engine tests — sharing, routing, decoding, failures.

Learn: These run the real engine against the in-memory broker from
conftest. Publishing goes through the reader task, so every assertion
about delivered messages comes after `await drain()`.
"""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from structlog.testing import capture_logs

from chatrelay.realtime.errors import ConfigError, TransportSubscribeError, UnknownSubscription
from chatrelay.realtime.pubsub import RedisPubSub
from chatrelay.realtime.serialization import DeserializerContext
from chatrelay.realtime.triggers import Channel, Pattern


@pytest.mark.asyncio
async def test_publish_reaches_subscriber(pubsub, drain):
    received = []
    await pubsub.subscribe("MESSAGE_SEND", received.append)

    receivers = await pubsub.publish("MESSAGE_SEND", {"content": "hi", "author": "system"})
    await drain()

    assert receivers == 1
    assert received == [{"content": "hi", "author": "system"}]


@pytest.mark.asyncio
async def test_triggers_on_one_channel_share_a_physical_subscription(
    publisher, subscriber, broker, drain
):
    """Two triggers, one channel: one SUBSCRIBE, independent unsubscribes."""
    engine = RedisPubSub(
        publisher=publisher,
        subscriber=subscriber,
        trigger_transform=lambda trigger, options: "shared",
    )
    fake = broker.pubsubs[0]
    first, second = [], []

    id1 = await engine.subscribe("T1", first.append)
    id2 = await engine.subscribe("T2", second.append)

    assert id1 != id2
    assert fake.calls_of("subscribe") == ["shared"]

    await engine.unsubscribe(id1)
    assert fake.calls_of("unsubscribe") == []

    await engine.publish("T2", "after")
    await drain()

    assert first == []
    assert second == ["after"]
    await engine.close()


@pytest.mark.asyncio
async def test_last_unsubscribe_releases_channel(pubsub, fake_pubsub):
    sub_id = await pubsub.subscribe("MESSAGE_SEND", lambda message: None)
    await pubsub.unsubscribe(sub_id)

    assert fake_pubsub.calls_of("unsubscribe") == ["MESSAGE_SEND"]
    assert pubsub.registry.channels == []


@pytest.mark.asyncio
async def test_unsubscribe_unknown_id_raises(pubsub):
    with pytest.raises(UnknownSubscription):
        await pubsub.unsubscribe(12345)


@pytest.mark.asyncio
async def test_unsubscribe_twice_raises(pubsub):
    sub_id = await pubsub.subscribe("MESSAGE_SEND", lambda message: None)
    await pubsub.unsubscribe(sub_id)
    with pytest.raises(UnknownSubscription):
        await pubsub.unsubscribe(sub_id)


@pytest.mark.asyncio
async def test_failed_subscribe_leaves_no_state(pubsub, fake_pubsub):
    fake_pubsub.fail_subscribe = RedisConnectionError("down")

    with pytest.raises(TransportSubscribeError) as exc:
        await pubsub.subscribe("MESSAGE_SEND", lambda message: None)

    assert exc.value.channel == "MESSAGE_SEND"
    assert len(pubsub.registry) == 0
    assert pubsub.registry.channels == []

    fake_pubsub.fail_subscribe = None
    sub_id = await pubsub.subscribe("MESSAGE_SEND", lambda message: None)
    assert pubsub.registry.refs(Channel("MESSAGE_SEND")) == [sub_id]


@pytest.mark.asyncio
async def test_pattern_subscription_routes_by_pattern(pubsub, fake_pubsub, drain):
    received = []
    sub_id = await pubsub.subscribe(Pattern("room.*"), received.append)

    await pubsub.publish("room.1", "one")
    await pubsub.publish("lobby", "nope")
    await pubsub.publish(("room", 2), "two")
    await drain()

    assert received == ["one", "two"]
    assert fake_pubsub.calls_of("psubscribe") == ["room.*"]

    await pubsub.unsubscribe(sub_id)
    assert fake_pubsub.calls_of("punsubscribe") == ["room.*"]


@pytest.mark.asyncio
async def test_undecodable_message_delivered_raw(pubsub, publisher, drain):
    received = []
    await pubsub.subscribe("MESSAGE_SEND", received.append)

    await publisher.publish("MESSAGE_SEND", b"{not json")
    await drain()

    assert received == [b"{not json"]


@pytest.mark.asyncio
async def test_custom_serializer_and_deserializer(publisher, subscriber, drain):
    contexts = []

    def deserializer(data, context):
        contexts.append(context)
        return data.decode().split("|")

    engine = RedisPubSub(
        publisher=publisher,
        subscriber=subscriber,
        serializer=lambda payload: "|".join(payload),
        deserializer=deserializer,
    )
    received = []
    await engine.subscribe(Pattern("room.*"), received.append)

    await engine.publish("room.9", ["a", "b"])
    await drain()

    assert received == [["a", "b"]]
    assert contexts == [DeserializerContext(channel="room.9", pattern="room.*")]
    await engine.close()


def test_reviver_with_deserializer_fails_before_connecting():
    with pytest.raises(ConfigError):
        RedisPubSub(reviver=lambda obj: obj, deserializer=lambda data, ctx: data)


@pytest.mark.asyncio
async def test_message_without_listeners_is_dropped(pubsub):
    # No subscription for this channel at all
    pubsub.on_message(None, "ghost", b'{"x": 1}')


@pytest.mark.asyncio
async def test_fan_out_in_registration_order(pubsub, drain):
    calls = []
    await pubsub.subscribe("MESSAGE_SEND", lambda m: calls.append(("first", m)))
    await pubsub.subscribe("MESSAGE_SEND", lambda m: calls.append(("second", m)))

    await pubsub.publish("MESSAGE_SEND", 1)
    await drain()

    assert calls == [("first", 1), ("second", 1)]


@pytest.mark.asyncio
async def test_failing_listener_does_not_starve_others(pubsub, drain):
    received = []

    def broken(message):
        raise RuntimeError("listener bug")

    await pubsub.subscribe("MESSAGE_SEND", broken)
    await pubsub.subscribe("MESSAGE_SEND", received.append)

    await pubsub.publish("MESSAGE_SEND", "still delivered")
    await drain()

    assert received == ["still delivered"]


@pytest.mark.asyncio
async def test_reader_errors_go_to_connection_listener(publisher, subscriber, broker, drain):
    errors = []
    engine = RedisPubSub(
        publisher=publisher,
        subscriber=subscriber,
        connection_listener=errors.append,
        reconnect_delay=0,
    )
    broker.pubsubs[0].fail_listen = RedisConnectionError("connection reset")
    received = []

    await engine.subscribe("MESSAGE_SEND", received.append)
    await drain()
    await engine.publish("MESSAGE_SEND", "after reconnect")
    await drain()

    assert [str(e) for e in errors] == ["connection reset"]
    assert received == ["after reconnect"]
    await engine.close()


@pytest.mark.asyncio
async def test_custom_event_names(publisher, subscriber, broker, drain):
    """Events are only dispatched when their type matches the configured names."""
    engine = RedisPubSub(
        publisher=publisher,
        subscriber=subscriber,
        message_event_name="msg",
    )
    received = []
    await engine.subscribe("MESSAGE_SEND", received.append)

    await engine.publish("MESSAGE_SEND", "ignored")
    await drain()
    broker.pubsubs[0]._events.put_nowait(
        {"type": "msg", "pattern": None, "channel": b"MESSAGE_SEND", "data": b'"seen"'}
    )
    await drain()

    assert received == ["seen"]
    await engine.close()


@pytest.mark.asyncio
async def test_reader_restarts_after_channel_is_released(pubsub, drain):
    first_id = await pubsub.subscribe("MESSAGE_SEND", lambda message: None)
    await pubsub.unsubscribe(first_id)
    await drain()

    received = []
    await pubsub.subscribe("MESSAGE_SEND", received.append)
    await pubsub.publish("MESSAGE_SEND", "again")
    await drain()

    assert received == ["again"]


@pytest.mark.asyncio
async def test_close_releases_connections(publisher, subscriber, broker):
    engine = RedisPubSub(publisher=publisher, subscriber=subscriber)
    await engine.subscribe("MESSAGE_SEND", lambda message: None)

    await engine.close()

    assert publisher.closed and subscriber.closed
    assert broker.pubsubs[0].closed
    assert engine.get_publisher() is publisher
    assert engine.get_subscriber() is subscriber


@pytest.mark.asyncio
async def test_concurrent_first_subscribers_share_one_subscribe(pubsub, fake_pubsub, drain):
    """A listener joining while the first SUBSCRIBE is in flight doesn't send another."""
    fake_pubsub.subscribe_delay = 0.01
    first, second = [], []

    id1, id2 = await asyncio.gather(
        pubsub.subscribe("CH", first.append),
        pubsub.subscribe("CH", second.append),
    )

    assert fake_pubsub.calls_of("subscribe") == ["CH"]
    assert pubsub.registry.refs(Channel("CH")) == [id1, id2]

    await pubsub.publish("CH", "x")
    await drain()
    assert first == ["x"]
    assert second == ["x"]


@pytest.mark.asyncio
async def test_quick_unsubscribe_during_concurrent_subscribe_keeps_channel(
    pubsub, fake_pubsub, drain
):
    """The survivor of two racing subscribers still has a live channel."""
    fake_pubsub.subscribe_delay = 0.01
    first, second = [], []

    pending_first = asyncio.ensure_future(pubsub.subscribe("CH", first.append))
    pending_second = asyncio.ensure_future(pubsub.subscribe("CH", second.append))
    await pubsub.unsubscribe(await pending_first)
    id2 = await pending_second

    assert pubsub.registry.refs(Channel("CH")) == [id2]
    assert "CH" in fake_pubsub.channels

    await pubsub.publish("CH", "x")
    await drain()
    assert first == []
    assert second == ["x"]


@pytest.mark.asyncio
async def test_failed_unsubscribe_goes_to_connection_listener(
    publisher, subscriber, broker
):
    errors = []
    engine = RedisPubSub(
        publisher=publisher,
        subscriber=subscriber,
        connection_listener=errors.append,
    )
    sub_id = await engine.subscribe("MESSAGE_SEND", lambda message: None)
    broker.pubsubs[0].fail_unsubscribe = RedisConnectionError("gone")

    await engine.unsubscribe(sub_id)

    assert [str(e) for e in errors] == ["gone"]
    assert len(engine.registry) == 0
    with pytest.raises(UnknownSubscription):
        await engine.unsubscribe(sub_id)

    broker.pubsubs[0].fail_unsubscribe = None
    await engine.close()


@pytest.mark.asyncio
async def test_unexpected_reader_error_is_logged(pubsub, fake_pubsub, drain):
    fake_pubsub.fail_listen = RuntimeError("bad event")

    with capture_logs() as logs:
        await pubsub.subscribe("MESSAGE_SEND", lambda message: None)
        await drain()

    assert "pubsub.reader_crashed" in [entry["event"] for entry in logs]
    assert pubsub._reader.done()
    assert pubsub._reader.exception() is None
