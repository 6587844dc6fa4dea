from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

Listener = Callable[..., Awaitable[None]] | Callable[..., None]
Unsubscribe = Callable[[], None]
Predicate = Callable[..., bool]


@dataclass(slots=True)
class _Waiter:
    predicate: Predicate | None
    future: asyncio.Future[Any]

    def matches(self, args: tuple[Any, ...]) -> bool:
        return self.predicate is None or bool(self.predicate(*args))


class AsyncEventEmitter:
    """
    Named-event fan-out used between the sync components.

    Listeners may be plain or async callables; `emit` runs them in the order they
    subscribed and awaits the async ones, so an emitter never leaves work running
    behind the caller. One-shot waiters (`wait_for`) are resolved before listeners
    run. Listener exceptions propagate to the emitter; wrap a listener with
    `util.asyncio.shielded` where that is not wanted.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._waiters: dict[str, list[_Waiter]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Unsubscribe:
        self._listeners[event].append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)
        if not listeners:
            self._listeners.pop(event, None)

    def remove_all_listeners(self) -> None:
        """Drop every listener and cancel every pending waiter."""

        self._listeners.clear()
        for waiters in self._waiters.values():
            for w in waiters:
                w.future.cancel()
        self._waiters.clear()

    def _resolve_waiters(self, event: str, args: tuple[Any, ...]) -> bool:
        waiters = self._waiters.pop(event, None)
        if not waiters:
            return False
        resolved = False
        keep: list[_Waiter] = []
        for w in waiters:
            if w.future.done():
                continue
            if w.matches(args):
                w.future.set_result(args[0] if len(args) == 1 else args)
                resolved = True
            else:
                keep.append(w)
        if keep:
            self._waiters[event] = keep
        return resolved

    async def emit(self, event: str, *args: Any) -> bool:
        """Deliver `args`; returns True if any waiter or listener received them."""

        delivered = self._resolve_waiters(event, args)
        for listener in tuple(self._listeners.get(event, ())):
            delivered = True
            result = listener(*args)
            if asyncio.iscoroutine(result):
                await result
        return delivered

    async def wait_for(
        self,
        event: str,
        *,
        predicate: Predicate | None = None,
        timeout_s: float | None = None,
    ) -> Any:
        # Registered before the first await so an emit racing with us is not missed.
        waiter = _Waiter(predicate, asyncio.get_running_loop().create_future())
        self._waiters[event].append(waiter)
        try:
            return await asyncio.wait_for(waiter.future, timeout=timeout_s)
        finally:
            remaining = [w for w in self._waiters.get(event, ()) if w is not waiter]
            if remaining:
                self._waiters[event] = remaining
            else:
                self._waiters.pop(event, None)
