"""Real-time infrastructure — Redis pub/sub engine + WebSocket.

Learn: Events flow through two hops:
1. API handlers → RedisPubSub.publish (Redis PUBLISH)
2. Redis → one shared subscriber connection → per-client async iterators
   → WebSocket → browser

Many WebSocket clients share one Redis connection; the engine
reference-counts channels and fans each message out in-process.
"""

from chatrelay.realtime.errors import (
    ConfigError,
    PubSubError,
    TransportSubscribeError,
    UnknownSubscription,
)
from chatrelay.realtime.filters import FilteredAsyncIterator, with_filter
from chatrelay.realtime.iterator import IteratorResult, IteratorState, PubSubAsyncIterator
from chatrelay.realtime.pubsub import RedisPubSub
from chatrelay.realtime.serialization import DeserializerContext
from chatrelay.realtime.triggers import Channel, Exact, Pattern

__all__ = [
    "Channel",
    "ConfigError",
    "DeserializerContext",
    "Exact",
    "FilteredAsyncIterator",
    "IteratorResult",
    "IteratorState",
    "Pattern",
    "PubSubAsyncIterator",
    "PubSubError",
    "RedisPubSub",
    "TransportSubscribeError",
    "UnknownSubscription",
    "with_filter",
]
