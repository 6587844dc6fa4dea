from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Coroutine, Hashable
from typing import Any, Generic, TypeVar

from ..exceptions import TransientNetworkError

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)

logger = logging.getLogger(__name__)


async def with_timeout(timeout_s: float, coro: Awaitable[T], *, what: str = "request") -> T:
    """Await `coro`, turning a timeout into a retryable `TransientNetworkError`."""

    try:
        return await asyncio.wait_for(coro, timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise TransientNetworkError(f"{what} timed out after {timeout_s:g}s") from e


async def cancel_suppress(task: asyncio.Task[object] | None) -> None:
    if not task:
        return
    # Awaiting the current task from itself raises; callers in that position just return.
    if task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def ensure_task(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    t: asyncio.Task[T] = asyncio.create_task(coro)
    if name:
        with contextlib.suppress(Exception):
            t.set_name(name)
    return t


def shielded(cb: Callable[..., Any], *, label: str) -> Callable[..., Coroutine[Any, Any, None]]:
    """Wrap a listener so that its failures are logged instead of propagating into `emit`."""

    async def _wrapped(*args: object) -> None:
        try:
            res = cb(*args)
            if asyncio.iscoroutine(res):
                await res
        except Exception:
            logger.exception("listener %s failed", label)

    return _wrapped


class Coalescer(Generic[K, T]):
    """
    Trailing-edge debounce that merges items per key.

    Every `add()` for a key restarts that key's timer; once `window_s` passes without
    a new `add()`, `flush(key, items)` is called once with the de-duplicated items in
    first-seen order. `close()` cancels pending timers without flushing.
    """

    def __init__(
        self,
        window_s: float,
        flush: Callable[[K, list[T]], Awaitable[None] | None],
        *,
        name: str = "coalescer",
    ) -> None:
        self.window_s = window_s
        self._flush = flush
        self._name = name
        self._pending: dict[K, dict[T, None]] = {}
        self._timers: dict[K, asyncio.Task[None]] = {}
        self._closed = False

    def add(self, key: K, items: list[T]) -> None:
        if self._closed:
            return
        bucket = self._pending.setdefault(key, {})
        for item in items:
            bucket.setdefault(item, None)

        timer = self._timers.get(key)
        if timer is not None and not timer.done():
            timer.cancel()
        self._timers[key] = ensure_task(self._fire_later(key), name=f"{self._name}.{key}")

    def pending(self, key: K) -> list[T]:
        return list(self._pending.get(key, {}))

    async def _fire_later(self, key: K) -> None:
        await asyncio.sleep(self.window_s)
        self._timers.pop(key, None)
        await self._run_flush(key)

    async def _run_flush(self, key: K) -> None:
        items = list(self._pending.pop(key, {}))
        if not items:
            return
        try:
            res = self._flush(key, items)
            if asyncio.iscoroutine(res):
                await res
        except Exception:
            logger.exception("%s flush failed for %s", self._name, key)

    async def flush_all(self) -> None:
        """Flush every pending key immediately."""

        for key in list(self._timers):
            timer = self._timers.pop(key)
            timer.cancel()
        for key in list(self._pending):
            await self._run_flush(key)

    async def close(self) -> None:
        self._closed = True
        timers = list(self._timers.values())
        self._timers.clear()
        self._pending.clear()
        for timer in timers:
            await cancel_suppress(timer)
