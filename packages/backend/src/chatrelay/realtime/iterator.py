"""Pull-based async iterator over pub/sub callbacks.

Learn: The engine pushes (a callback fires whenever Redis delivers), a
WebSocket handler pulls (`await it.next()` when it's ready for more). The
bridge between the two is a pair of FIFO queues:

- push queue: values that arrived while nobody was waiting
- pull queue: futures of consumers waiting while no value was available

At most one of them is non-empty at any time. A value either resolves the
oldest waiting future or gets buffered; a pull either takes the oldest
buffered value or parks a future. The push queue is unbounded on purpose:
there is no backpressure towards Redis, a slow consumer just buffers.

Lifecycle: INIT -> LISTENING on the first next() (that's when we actually
subscribe), -> DONE on cancel()/fail() or when the engine closes. DONE is
final; ask the engine for a new iterator instead.
"""

import asyncio
import enum
from collections import deque
from typing import TYPE_CHECKING, Any, Mapping, NamedTuple, Optional, Sequence, Union

import structlog

from chatrelay.realtime.triggers import Target, Trigger

if TYPE_CHECKING:
    from chatrelay.realtime.pubsub import RedisPubSub

logger = structlog.get_logger()


class IteratorResult(NamedTuple):
    value: Any
    done: bool


DONE_RESULT = IteratorResult(value=None, done=True)


class IteratorState(str, enum.Enum):
    INIT = "init"
    LISTENING = "listening"
    DONE = "done"


class PubSubAsyncIterator:
    """One consumer's view of one or more triggers."""

    def __init__(
        self,
        pubsub: "RedisPubSub",
        triggers: Sequence[Union[Trigger, Target]],
        options: Optional[Mapping[str, Any]] = None,
    ):
        self._pubsub = pubsub
        self._triggers = list(triggers)
        self._options = options
        self._push_queue: deque[Any] = deque()
        self._pull_queue: deque[asyncio.Future] = deque()
        self._subscribing: Optional[asyncio.Future] = None
        self.state = IteratorState.INIT

    def __aiter__(self) -> "PubSubAsyncIterator":
        return self

    async def __anext__(self) -> Any:
        result = await self.next()
        if result.done:
            raise StopAsyncIteration
        return result.value

    async def __aenter__(self) -> "PubSubAsyncIterator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()

    @property
    def buffered(self) -> int:
        """Values received but not yet pulled."""
        return len(self._push_queue)

    @property
    def waiting(self) -> int:
        """Pulls parked until a value arrives."""
        return len(self._pull_queue)

    async def next(self) -> IteratorResult:
        if self.state is IteratorState.DONE:
            return DONE_RESULT

        if self.state is IteratorState.INIT:
            self.state = IteratorState.LISTENING
            self._subscribing = asyncio.ensure_future(self._subscribe_all())

        await asyncio.shield(self._subscribing)

        # cancel() may have run while we were subscribing
        if self.state is IteratorState.DONE:
            return DONE_RESULT
        return await self._pull_value()

    async def cancel(self) -> IteratorResult:
        """Stop listening. Pending pulls complete with done=True."""
        await self._empty_queue()
        return DONE_RESULT

    async def fail(self, error: BaseException) -> IteratorResult:
        """Stop listening and raise `error` to the caller."""
        await self._empty_queue()
        raise error

    # async generator protocol names, for contextlib.aclosing and friends
    aclose = cancel
    athrow = fail

    # ─── Queues ───────────────────────────────────────────

    def push_value(self, event: Any) -> None:
        """Registered as the engine callback for every trigger."""
        if self.state is IteratorState.DONE:
            return
        while self._pull_queue:
            waiter = self._pull_queue.popleft()
            # The consumer may have given up (e.g. wait_for timeout)
            if not waiter.done():
                waiter.set_result(IteratorResult(value=event, done=False))
                return
        self._push_queue.append(event)

    async def _pull_value(self) -> IteratorResult:
        if self._push_queue:
            return IteratorResult(value=self._push_queue.popleft(), done=False)

        waiter = asyncio.get_running_loop().create_future()
        self._pull_queue.append(waiter)
        return await waiter

    async def _empty_queue(self) -> None:
        if self.state is IteratorState.DONE:
            return
        self.state = IteratorState.DONE

        for waiter in self._pull_queue:
            if not waiter.done():
                waiter.set_result(DONE_RESULT)
        self._pull_queue.clear()
        self._push_queue.clear()

        if self._subscribing is not None:
            try:
                sub_ids = await asyncio.shield(self._subscribing)
            except Exception:
                # The failing next() already reported it and cleaned up
                sub_ids = []
            await self._unsubscribe_all(sub_ids)

    # ─── Subscriptions ────────────────────────────────────

    async def _subscribe_all(self) -> list[int]:
        results = await asyncio.gather(
            *(
                self._pubsub.subscribe(trigger, self.push_value, self._options)
                for trigger in self._triggers
            ),
            return_exceptions=True,
        )
        sub_ids = [r for r in results if not isinstance(r, BaseException)]
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            # Release what did succeed, then the iterator is finished
            self.state = IteratorState.DONE
            for waiter in self._pull_queue:
                if not waiter.done():
                    waiter.set_result(DONE_RESULT)
            self._pull_queue.clear()
            await self._unsubscribe_all(sub_ids)
            raise errors[0]
        return sub_ids

    async def _unsubscribe_all(self, sub_ids: list[int]) -> None:
        for sub_id in sub_ids:
            try:
                await self._pubsub.unsubscribe(sub_id)
            except Exception as e:
                logger.warning("pubsub.unsubscribe_failed", sub_id=sub_id, error=str(e))
