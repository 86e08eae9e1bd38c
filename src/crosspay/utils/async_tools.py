"""Reusable async memoization, debouncing and supersession helpers.

These are the only cache, debouncer and generation counter in the engine;
the quote service and balance synchronizer both build on them.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


class RequestCancelled(Exception):
    """A pending request was cancelled before it produced a result."""

    def __init__(self, key: Any = None):
        self.key = key
        super().__init__(f"Request cancelled: {key!r}")


class Generation:
    """Monotonic token used to detect superseded work at resolution time."""

    def __init__(self) -> None:
        self.value = 0

    def bump(self) -> int:
        self.value += 1
        return self.value

    def is_current(self, token: int) -> bool:
        return token == self.value


async def _wait_shared(key: Any, task: "asyncio.Future") -> Any:
    """Wait for a shared task without letting its cancellation cancel us."""
    await asyncio.wait({task})
    if task.cancelled():
        raise RequestCancelled(key)
    return task.result()


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float
    timer: Optional[asyncio.TimerHandle] = None


class AsyncMemo(Generic[V]):
    """TTL cache with in-flight request sharing and scheduled eviction.

    ``get_or_load`` returns a fresh cached value without calling the loader;
    concurrent callers for the same key await one shared load.

    Example:
        memo = AsyncMemo(ttl=15.0, name="quotes")
        quote = await memo.get_or_load(key, lambda: fetch_quote(...))
    """

    def __init__(self, ttl: float, name: str = "memo"):
        self.ttl = ttl
        self.name = name
        self._values: dict[Hashable, _Entry[V]] = {}
        self._in_flight: dict[Hashable, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._values)

    def peek(self, key: Hashable) -> Optional[V]:
        """Return the cached value if still fresh."""
        entry = self._values.get(key)
        if entry is None:
            return None
        if time.monotonic() >= entry.expires_at:
            self._drop(key, entry)
            return None
        return entry.value

    def is_pending(self, key: Hashable) -> bool:
        task = self._in_flight.get(key)
        return task is not None and not task.done()

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[V]]) -> V:
        cached = self.peek(key)
        if cached is not None:
            logger.debug(f"[{self.name}] cache hit for {key!r}")
            return cached

        task = self._in_flight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(self._load(key, loader))
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug(f"[{self.name}] joining in-flight load for {key!r}")

        return await _wait_shared(key, task)

    async def _load(self, key: Hashable, loader: Callable[[], Awaitable[V]]) -> V:
        value = await loader()
        self.put(key, value)
        return value

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Retrieve the outcome so unobserved failures are not reported at GC
        if not task.cancelled():
            task.exception()

    def put(self, key: Hashable, value: V) -> None:
        """Store a value and schedule its eviction."""
        old = self._values.get(key)
        if old is not None and old.timer is not None:
            old.timer.cancel()

        entry = _Entry(value=value, expires_at=time.monotonic() + self.ttl)
        try:
            loop = asyncio.get_running_loop()
            entry.timer = loop.call_later(self.ttl, self._evict, key, entry)
        except RuntimeError:
            pass  # no loop: expiry is still enforced by peek()
        self._values[key] = entry

    def _evict(self, key: Hashable, entry: _Entry[V]) -> None:
        if self._values.get(key) is entry:
            del self._values[key]
            logger.debug(f"[{self.name}] evicted {key!r}")

    def _drop(self, key: Hashable, entry: _Entry[V]) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        if self._values.get(key) is entry:
            del self._values[key]

    def invalidate(self, key: Hashable) -> None:
        entry = self._values.get(key)
        if entry is not None:
            self._drop(key, entry)

    def cancel(self, key: Hashable) -> bool:
        """Cancel a pending load; its waiters receive RequestCancelled."""
        task = self._in_flight.get(key)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug(f"[{self.name}] cancelled pending load for {key!r}")
        return True

    def clear(self) -> None:
        """Drop all values, eviction timers and pending loads."""
        for entry in self._values.values():
            if entry.timer is not None:
                entry.timer.cancel()
        self._values.clear()
        for task in list(self._in_flight.values()):
            task.cancel()
        self._in_flight.clear()


class AsyncDebouncer:
    """Collects triggered keys and runs one handler call per quiet period.

    Every ``trigger`` inside the window resets the timer; when it fires the
    handler receives the whole batch. ``trigger`` returns a future resolved
    when the batch containing that key has been handled.
    """

    def __init__(
        self,
        delay: float,
        handler: Callable[[frozenset], Awaitable[None]],
        name: str = "debounce",
    ):
        self.delay = delay
        self.handler = handler
        self.name = name
        self._pending: set = set()
        self._future: Optional[asyncio.Future] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._running: set[asyncio.Task] = set()

    @property
    def pending(self) -> frozenset:
        return frozenset(self._pending)

    def trigger(self, key: Hashable) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        self._pending.add(key)
        if self._future is None or self._future.done():
            self._future = loop.create_future()
            self._future.add_done_callback(_consume)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.delay, self._fire)
        return self._future

    def _fire(self) -> Optional[asyncio.Task]:
        self._timer = None
        if not self._pending:
            return None
        keys = frozenset(self._pending)
        future = self._future
        self._pending.clear()
        self._future = None

        logger.debug(f"[{self.name}] flushing batch {sorted(map(str, keys))}")
        task = asyncio.ensure_future(self._run(keys, future))
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return task

    async def _run(self, keys: frozenset, future: Optional[asyncio.Future]) -> None:
        try:
            await self.handler(keys)
        except asyncio.CancelledError:
            if future is not None and not future.done():
                future.cancel()
            raise
        except Exception as e:
            logger.error(f"[{self.name}] batch handler failed: {e}")
            if future is not None and not future.done():
                future.set_exception(e)
        else:
            if future is not None and not future.done():
                future.set_result(keys)

    async def flush(self) -> None:
        """Run the pending batch now instead of waiting for the timer."""
        if self._timer is not None:
            self._timer.cancel()
        task = self._fire()
        if task is not None:
            await asyncio.wait({task})

    def cancel(self) -> None:
        """Drop the pending batch and cancel batches still running."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()
        if self._future is not None and not self._future.done():
            self._future.cancel()
        self._future = None
        for task in list(self._running):
            task.cancel()


def _consume(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


async def wait_batch(key: Hashable, future: asyncio.Future) -> Any:
    """Await a debouncer future; cancellation surfaces as RequestCancelled."""
    return await _wait_shared(key, future)


class DebouncedCall(Generic[V]):
    """Debounce a coroutine function: only the last call in a burst runs.

    Superseded callers receive RequestCancelled; the surviving caller gets the
    result of the function.
    """

    def __init__(self, func: Callable[..., Awaitable[V]], delay: float, name: str = "debounced"):
        self.func = func
        self.delay = delay
        self.name = name
        self._task: Optional[asyncio.Task] = None

    async def __call__(self, *args, **kwargs) -> V:
        self.cancel()
        task = asyncio.ensure_future(self._delayed(*args, **kwargs))
        self._task = task
        task.add_done_callback(_consume_task)
        return await _wait_shared(self.name, task)

    async def _delayed(self, *args, **kwargs) -> V:
        await asyncio.sleep(self.delay)
        return await self.func(*args, **kwargs)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


def _consume_task(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()
