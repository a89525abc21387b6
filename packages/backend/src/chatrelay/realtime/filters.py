"""Predicate filtering on top of any pub/sub iterator.

Learn: Every WebSocket watching "MESSAGE_SEND" shares one Redis channel,
but a client may only want messages from one author. with_filter wraps the
iterator factory so non-matching events are skipped before the consumer
ever sees them:

    resolver = with_filter(
        lambda: pubsub.async_iterator("MESSAGE_SEND"),
        lambda payload, args, context, info: payload["author"] == args["author"],
    )
    iterator = resolver(None, {"author": "system"})

The returned factory takes the usual (root_value, args, context, info)
resolver arguments and passes them to the predicate. A predicate may be
async, and one that raises counts as "no match" rather than ending the
stream.
"""

import inspect
from typing import Any, Callable, Optional

from chatrelay.realtime.iterator import IteratorResult

FilterFn = Callable[[Any, Any, Any, Any], Any]


class FilteredAsyncIterator:
    """Skips events from `iterator` until `filter_fn` accepts one."""

    def __init__(
        self,
        iterator: Any,
        filter_fn: FilterFn,
        args: Any = None,
        context: Any = None,
        info: Any = None,
    ):
        self._iterator = iterator
        self._filter_fn = filter_fn
        self._args = args
        self._context = context
        self._info = info

    def __aiter__(self) -> "FilteredAsyncIterator":
        return self

    async def __anext__(self) -> Any:
        result = await self.next()
        if result.done:
            raise StopAsyncIteration
        return result.value

    async def __aenter__(self) -> "FilteredAsyncIterator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()

    async def next(self) -> IteratorResult:
        while True:
            result = await self._iterator.next()
            if result.done:
                return result
            if await self._matches(result.value):
                return result

    async def _matches(self, value: Any) -> bool:
        try:
            verdict = self._filter_fn(value, self._args, self._context, self._info)
            if inspect.isawaitable(verdict):
                verdict = await verdict
        except Exception:
            return False
        return bool(verdict)

    async def cancel(self) -> IteratorResult:
        return await self._iterator.cancel()

    async def fail(self, error: BaseException) -> IteratorResult:
        return await self._iterator.fail(error)

    aclose = cancel
    athrow = fail


def with_filter(
    async_iterator_fn: Callable[[], Any],
    filter_fn: FilterFn,
) -> Callable[..., FilteredAsyncIterator]:
    """Wrap a zero-argument iterator factory with a predicate."""

    def resolver(
        root_value: Any = None,
        args: Optional[Any] = None,
        context: Optional[Any] = None,
        info: Optional[Any] = None,
    ) -> FilteredAsyncIterator:
        return FilteredAsyncIterator(async_iterator_fn(), filter_fn, args, context, info)

    return resolver
