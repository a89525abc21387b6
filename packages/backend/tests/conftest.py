"""Test fixtures — an in-memory stand-in for Redis pub/sub.

Learn: The engine only needs a small slice of the redis.asyncio API:
PUBLISH on one client, and a pub/sub object with (p)subscribe,
(p)unsubscribe, listen() and a `subscribed` flag on the other. FakeBroker
wires those together in memory so tests exercise the real engine code
(registry, reader task, decoding, iterators) without a Redis server.

Events are delivered through the engine's reader task, so tests that
publish and then inspect callbacks call `await drain()` to let the event
loop run it.
"""

import asyncio
import fnmatch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chatrelay.realtime.pubsub import RedisPubSub


class FakeBroker:
    """Routes PUBLISH calls to every fake pub/sub object."""

    def __init__(self):
        self.pubsubs: list["FakePubSub"] = []
        self.published: list[tuple[str, bytes]] = []

    def deliver(self, channel: str, data: bytes) -> int:
        return sum(ps.deliver(channel, data) for ps in self.pubsubs)


class FakeRedis:
    """The client half: publish, ping, pubsub(), aclose()."""

    def __init__(self, broker: FakeBroker):
        self.broker = broker
        self.closed = False
        self.fail_publish: Exception | None = None
        self.fail_ping: Exception | None = None

    async def publish(self, channel: str, data) -> int:
        if self.fail_publish is not None:
            raise self.fail_publish
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.broker.published.append((channel, data))
        return self.broker.deliver(channel, data)

    async def ping(self) -> bool:
        if self.fail_ping is not None:
            raise self.fail_ping
        return True

    def pubsub(self) -> "FakePubSub":
        ps = FakePubSub()
        self.broker.pubsubs.append(ps)
        return ps

    async def aclose(self) -> None:
        self.closed = True


class FakePubSub:
    """The subscriber half, shaped like redis.asyncio.client.PubSub."""

    def __init__(self):
        self.channels: dict[str, None] = {}
        self.patterns: dict[str, None] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_subscribe: Exception | None = None
        self.fail_unsubscribe: Exception | None = None
        self.fail_listen: Exception | None = None
        # Seconds a (p)subscribe takes to return after the command is sent
        self.subscribe_delay: float = 0
        self.closed = False
        self._events: asyncio.Queue = asyncio.Queue()

    @property
    def subscribed(self) -> bool:
        return bool(self.channels or self.patterns)

    def calls_of(self, kind: str) -> list[str]:
        return [name for call, name in self.calls if call == kind]

    async def _add(self, kind: str, registry: dict, names) -> None:
        if self.fail_subscribe is not None:
            raise self.fail_subscribe
        for name in names:
            self.calls.append((kind, name))
            registry[name] = None
            self._events.put_nowait(
                {"type": kind, "pattern": None, "channel": name.encode(), "data": 1}
            )
        if self.subscribe_delay:
            await asyncio.sleep(self.subscribe_delay)

    async def _remove(self, kind: str, registry: dict, names) -> None:
        if self.fail_unsubscribe is not None:
            raise self.fail_unsubscribe
        for name in names:
            self.calls.append((kind, name))
            registry.pop(name, None)
            self._events.put_nowait(
                {"type": kind, "pattern": None, "channel": name.encode(), "data": 0}
            )

    async def subscribe(self, *names):
        await self._add("subscribe", self.channels, names)

    async def psubscribe(self, *names):
        await self._add("psubscribe", self.patterns, names)

    async def unsubscribe(self, *names):
        await self._remove("unsubscribe", self.channels, names)

    async def punsubscribe(self, *names):
        await self._remove("punsubscribe", self.patterns, names)

    def deliver(self, channel: str, data: bytes) -> int:
        receivers = 0
        if channel in self.channels:
            self._events.put_nowait(
                {"type": "message", "pattern": None, "channel": channel.encode(), "data": data}
            )
            receivers += 1
        for pattern in self.patterns:
            if fnmatch.fnmatchcase(channel, pattern):
                self._events.put_nowait(
                    {
                        "type": "pmessage",
                        "pattern": pattern.encode(),
                        "channel": channel.encode(),
                        "data": data,
                    }
                )
                receivers += 1
        return receivers

    async def listen(self):
        if self.fail_listen is not None:
            error, self.fail_listen = self.fail_listen, None
            raise error
        while True:
            event = await self._events.get()
            yield event
            if not self.subscribed and self._events.empty():
                return

    async def aclose(self) -> None:
        self.closed = True


async def drain(rounds: int = 10) -> None:
    """Let the reader task and any woken consumers run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture()
def broker():
    return FakeBroker()


@pytest.fixture()
def publisher(broker):
    return FakeRedis(broker)


@pytest.fixture()
def subscriber(broker):
    return FakeRedis(broker)


@pytest_asyncio.fixture()
async def pubsub(publisher, subscriber):
    """Engine wired to the fake broker, closed after the test."""
    engine = RedisPubSub(publisher=publisher, subscriber=subscriber)
    yield engine
    await engine.close()


@pytest.fixture()
def fake_pubsub(broker, pubsub) -> FakePubSub:
    """The fake pub/sub object the engine subscribes through."""
    return broker.pubsubs[0]


@pytest_asyncio.fixture()
async def client(pubsub):
    """HTTP client for a fresh app whose engine is the fake-backed one.

    Learn: ASGITransport doesn't run the lifespan, so we park the engine
    on app.state ourselves, exactly where lifespan would have put it.
    """
    from chatrelay.main import create_app

    app = create_app()
    app.state.pubsub = pubsub

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture(name="drain")
def drain_fixture():
    return drain
