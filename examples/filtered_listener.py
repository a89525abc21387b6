#!/usr/bin/env python3
"""
Use the pub/sub engine directly — no web server involved.

Two consumers share one Redis subscription on MESSAGE_SEND: one sees
everything, the other only messages from "system". A third watches every
"room.*" channel through a pattern subscription.
Run with: python examples/filtered_listener.py

Requires: a Redis server on localhost:6379
"""

import asyncio

from chatrelay.realtime import Pattern, RedisPubSub, with_filter


async def main():
    pubsub = RedisPubSub(connection="redis://localhost:6379/0")

    everything = pubsub.async_iterator("MESSAGE_SEND")
    system_only = with_filter(
        lambda: pubsub.async_iterator("MESSAGE_SEND"),
        lambda payload, args, context, info: payload["author"] == "system",
    )()
    rooms = pubsub.async_iterator(Pattern(("room", "*")))

    # First pulls subscribe; give them a moment before publishing
    pulls = [asyncio.ensure_future(it.next()) for it in (everything, system_only, rooms)]
    await asyncio.sleep(0.2)

    await pubsub.publish("MESSAGE_SEND", {"content": "hi", "author": "alice"})
    await pubsub.publish("MESSAGE_SEND", {"content": "maintenance at 5", "author": "system"})
    await pubsub.publish(("room", 7), {"content": "in room 7", "author": "bob"})

    everything_first, system_first, room_first = await asyncio.gather(*pulls)
    print("everything  :", everything_first.value, (await everything.next()).value)
    print("system only :", system_first.value)
    print("rooms       :", room_first.value)

    await pubsub.close()


if __name__ == "__main__":
    asyncio.run(main())
