"""Redis pub/sub engine — many subscribers, two connections.

Learn: Redis pub/sub is fire-and-forget. If no one is listening, the message
is lost. That's fine for chat: the UI can always query the API to catch up.

A connection in subscribe mode can't run normal commands, so the engine
holds two clients: a publisher and a subscriber. Every consumer in the
process shares the subscriber's single pub/sub object:

1. subscribe() reference-counts channels in a SubscriptionRegistry and only
   sends SUBSCRIBE / PSUBSCRIBE for the first listener on a channel
2. one background reader task iterates pubsub.listen() and hands each
   event to on_message()
3. on_message() decodes once and calls every listener on that channel,
   synchronously, in the order they subscribed

The engine is created once at startup (see main.lifespan) and passed
around by reference: app.state.pubsub, get_pubsub() in route handlers.
"""

import asyncio
import weakref
from typing import Any, Callable, Mapping, Optional, Union

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from starlette.requests import HTTPConnection

from chatrelay.config import Settings
from chatrelay.realtime.errors import TransportSubscribeError
from chatrelay.realtime.iterator import PubSubAsyncIterator
from chatrelay.realtime.registry import OnMessage, Subscription, SubscriptionRegistry
from chatrelay.realtime.serialization import (
    DeserializerContext,
    Deserializer,
    RawMessage,
    Reviver,
    Serializer,
    build_decoder,
    json_serializer,
)
from chatrelay.realtime.triggers import (
    Channel,
    Target,
    Trigger,
    TriggerTransform,
    default_transform,
    prefixed_transform,
    resolve_channel,
)

logger = structlog.get_logger()

ConnectionListener = Callable[[Exception], None]
Triggers = Union[Trigger, Target, list[Union[Trigger, Target]]]


def _text(value: Union[bytes, str, None]) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisPubSub:
    """Multiplexes logical subscriptions over one Redis pub/sub connection."""

    def __init__(
        self,
        *,
        connection: Union[str, Mapping[str, Any], None] = None,
        publisher: Optional[aioredis.Redis] = None,
        subscriber: Optional[aioredis.Redis] = None,
        trigger_transform: Optional[TriggerTransform] = None,
        connection_listener: Optional[ConnectionListener] = None,
        reviver: Optional[Reviver] = None,
        serializer: Optional[Serializer] = None,
        deserializer: Optional[Deserializer] = None,
        message_event_name: str = "message",
        pmessage_event_name: str = "pmessage",
        reconnect_delay: float = 1.0,
    ):
        # Validate before touching any connection
        self._decode = build_decoder(reviver=reviver, deserializer=deserializer)
        self._serialize = serializer or json_serializer
        self._transform = trigger_transform or default_transform
        self._connection_listener = connection_listener
        self._message_event_name = message_event_name
        self._pmessage_event_name = pmessage_event_name
        self._reconnect_delay = reconnect_delay

        if publisher is not None and subscriber is not None:
            self._publisher = publisher
            self._subscriber = subscriber
        else:
            self._publisher = self._connect(connection)
            self._subscriber = self._connect(connection)

        self._pubsub = self._subscriber.pubsub()
        self._registry = SubscriptionRegistry()
        self._reader: Optional[asyncio.Task] = None
        # Channels whose first SUBSCRIBE / PSUBSCRIBE is still in flight
        self._pending: dict[Channel, asyncio.Future] = {}
        self._iterators: "weakref.WeakSet[PubSubAsyncIterator]" = weakref.WeakSet()
        self._closed = False

    @staticmethod
    def _connect(connection: Union[str, Mapping[str, Any], None]) -> aioredis.Redis:
        if isinstance(connection, str):
            return aioredis.from_url(connection)
        return aioredis.Redis(**dict(connection or {}))

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    def get_publisher(self) -> aioredis.Redis:
        return self._publisher

    def get_subscriber(self) -> aioredis.Redis:
        return self._subscriber

    # ─── Publishing ───────────────────────────────────────

    async def publish(self, trigger: Trigger, payload: Any) -> int:
        """Encode and PUBLISH a payload. Returns Redis' receiver count."""
        channel = self._transform(trigger, None)
        return await self._publisher.publish(channel, self._serialize(payload))

    # ─── Subscribing ──────────────────────────────────────

    async def subscribe(
        self,
        trigger: Union[Trigger, Target],
        on_message: OnMessage,
        options: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Register a listener and return its subscription id.

        Learn: Only the first listener on a channel costs a round trip to
        Redis. Later ones just join the channel's ref-set. A listener that
        arrives while that first SUBSCRIBE is still in flight waits for it,
        then checks again: the channel may have been joined, or already
        released, by the time it resumes.
        """
        channel = resolve_channel(trigger, self._transform, options)
        sub_id = self._registry.next_id()
        subscription = Subscription(id=sub_id, channel=channel, callback=on_message)

        while True:
            if self._registry.is_active(channel):
                self._registry.add(subscription)
                return sub_id
            pending = self._pending.get(channel)
            if pending is None:
                break
            await asyncio.shield(pending)

        pending = asyncio.get_running_loop().create_future()
        self._pending[channel] = pending
        try:
            if channel.pattern:
                await self._pubsub.psubscribe(channel.name)
            else:
                await self._pubsub.subscribe(channel.name)
        except RedisError as e:
            logger.warning("pubsub.subscribe_failed", channel=channel.name, error=str(e))
            raise TransportSubscribeError(channel.name, str(e)) from e
        finally:
            # Waiters retry on their own if this one failed
            del self._pending[channel]
            pending.set_result(None)

        self._registry.add(subscription)
        self._ensure_reader()
        logger.debug(
            "pubsub.subscribed",
            channel=channel.name,
            pattern=channel.pattern,
            sub_id=sub_id,
        )
        return sub_id

    async def unsubscribe(self, sub_id: int) -> None:
        """Drop a listener; release the channel if it was the last one.

        Raises UnknownSubscription before doing anything if the id is unknown.
        A failed UNSUBSCRIBE goes to the connection listener, not the caller:
        the listener is already gone from the registry either way.
        """
        subscription, last = self._registry.remove(sub_id)
        if not last:
            return

        channel = subscription.channel
        try:
            if channel.pattern:
                await self._pubsub.punsubscribe(channel.name)
            else:
                await self._pubsub.unsubscribe(channel.name)
        except RedisError as e:
            self._report(e)
            return
        logger.debug("pubsub.unsubscribed", channel=channel.name, pattern=channel.pattern)

    def async_iterator(
        self,
        triggers: Triggers,
        options: Optional[Mapping[str, Any]] = None,
    ) -> PubSubAsyncIterator:
        """A fresh pull-based stream over one trigger or a list of them.

        Nothing is subscribed until the first next().
        """
        if not isinstance(triggers, list):
            triggers = [triggers]
        iterator = PubSubAsyncIterator(self, triggers, options)
        self._iterators.add(iterator)
        return iterator

    # ─── Receiving ────────────────────────────────────────

    def on_message(
        self,
        pattern: Optional[str],
        channel: str,
        data: RawMessage,
    ) -> None:
        """Decode one transport event and fan it out to every listener.

        Events for channels nobody listens to anymore are dropped; that
        happens routinely while a channel is being torn down.
        """
        key = Channel(pattern, True) if pattern else Channel(channel, False)
        callbacks = self._registry.callbacks(key)
        if not callbacks:
            return

        try:
            message = self._decode(data, DeserializerContext(channel=channel, pattern=pattern))
        except Exception:
            # Undecodable payloads are delivered as-is
            message = data

        for callback in callbacks:
            try:
                callback(message)
            except Exception:
                logger.exception("pubsub.listener_error", channel=channel)

    def _handle(self, event: Mapping[str, Any]) -> None:
        kind = _text(event.get("type"))
        if kind == self._message_event_name:
            self.on_message(None, _text(event["channel"]), event["data"])
        elif kind == self._pmessage_event_name:
            self.on_message(_text(event["pattern"]), _text(event["channel"]), event["data"])

    def _ensure_reader(self) -> None:
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        """Pump events from the subscriber connection into on_message().

        Learn: pubsub.listen() ends by itself once the last channel is
        unsubscribed; the next subscribe() starts a new reader. Connection
        errors are reported and retried, they never end the streams built
        on top of this engine.
        """
        while True:
            try:
                async for event in self._pubsub.listen():
                    self._handle(event)
            except RedisError as e:
                self._report(e)
                await asyncio.sleep(self._reconnect_delay)
                continue
            except Exception:
                logger.exception("pubsub.reader_crashed")
                return
            if not self._pubsub.subscribed:
                return

    def _report(self, error: Exception) -> None:
        if self._connection_listener is not None:
            self._connection_listener(error)
        else:
            logger.error("pubsub.reader_error", error=str(error))

    # ─── Shutdown ─────────────────────────────────────────

    async def close(self) -> None:
        """End every live stream, then release both connections."""
        if self._closed:
            return
        self._closed = True

        for iterator in list(self._iterators):
            await iterator.cancel()

        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass

        await self._pubsub.aclose()
        await asyncio.gather(self._publisher.aclose(), self._subscriber.aclose())
        logger.info("pubsub.closed")


def build_pubsub(config: Settings) -> RedisPubSub:
    """Build the process-wide engine from application settings."""
    return RedisPubSub(
        connection=config.redis_url,
        trigger_transform=prefixed_transform(config.channel_prefix),
        message_event_name=config.message_event_name,
        pmessage_event_name=config.pmessage_event_name,
        reconnect_delay=config.reconnect_delay_seconds,
    )


def get_pubsub(conn: HTTPConnection) -> RedisPubSub:
    """FastAPI dependency: the engine created in the app lifespan."""
    pubsub = getattr(conn.app.state, "pubsub", None)
    if pubsub is None:
        raise RuntimeError("PubSub not initialized. Start the app lifespan first.")
    return pubsub
