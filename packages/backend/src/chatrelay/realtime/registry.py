"""Subscription bookkeeping — which callbacks listen on which channel.

Learn: Redis charges us one SUBSCRIBE per channel, not per listener, so we
reference-count. Every logical subscription gets an id; every physical
channel keeps the ordered list of ids riding on it (its "ref-set"). The
first id on a channel means a real SUBSCRIBE, removing the last id means a
real UNSUBSCRIBE, everything in between is just list bookkeeping.

The registry itself never talks to Redis. RedisPubSub asks it questions
and issues the physical calls, so the registry stays synchronous and every
mutation happens in one uninterrupted step on the event loop.
"""

import itertools
from dataclasses import dataclass
from typing import Any, Callable, Optional

from chatrelay.realtime.errors import UnknownSubscription
from chatrelay.realtime.triggers import Channel

OnMessage = Callable[[Any], None]


@dataclass(frozen=True)
class Subscription:
    id: int
    channel: Channel
    callback: OnMessage


class SubscriptionRegistry:
    """id -> Subscription, and Channel -> ordered ids."""

    def __init__(self):
        self._subscriptions: dict[int, Subscription] = {}
        self._refs: dict[Channel, list[int]] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, sub_id: object) -> bool:
        return sub_id in self._subscriptions

    @property
    def channels(self) -> list[Channel]:
        """Channels that currently hold a physical subscription."""
        return list(self._refs)

    def next_id(self) -> int:
        """Reserve a fresh id. Ids are never handed out twice."""
        return next(self._ids)

    def is_active(self, channel: Channel) -> bool:
        return bool(self._refs.get(channel))

    def refs(self, channel: Channel) -> list[int]:
        return list(self._refs.get(channel, ()))

    def get(self, sub_id: int) -> Optional[Subscription]:
        return self._subscriptions.get(sub_id)

    def add(self, subscription: Subscription) -> bool:
        """Register a subscription. Returns True if its channel was idle."""
        refs = self._refs.get(subscription.channel, [])
        self._refs[subscription.channel] = [*refs, subscription.id]
        self._subscriptions[subscription.id] = subscription
        return not refs

    def remove(self, sub_id: int) -> tuple[Subscription, bool]:
        """Drop a subscription.

        Returns the removed subscription and whether it was the last one on
        its channel (i.e. the caller must issue the physical unsubscribe).
        """
        subscription = self._subscriptions.get(sub_id)
        if subscription is None:
            raise UnknownSubscription(sub_id)

        refs = self._refs.get(subscription.channel, [])
        last = refs == [sub_id]
        if last:
            del self._refs[subscription.channel]
        else:
            self._refs[subscription.channel] = [i for i in refs if i != sub_id]

        del self._subscriptions[sub_id]
        return subscription, last

    def callbacks(self, channel: Channel) -> list[OnMessage]:
        """Snapshot of the callbacks on a channel, in registration order."""
        return [
            self._subscriptions[sub_id].callback
            for sub_id in self._refs.get(channel, ())
            if sub_id in self._subscriptions
        ]
