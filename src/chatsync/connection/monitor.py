from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from ..constants import CRITICAL_CONNECTION_S, STALE_CONNECTION_S
from ..util.events import AsyncEventEmitter, Listener, Unsubscribe

logger = logging.getLogger(__name__)

ConnectionState = Literal["disconnected", "connecting", "connected"]
HealthStatus = Literal["healthy", "degraded", "stale", "critical", "disconnected"]


@dataclass(frozen=True, slots=True)
class ConnectionUpdate:
    previous: ConnectionState
    current: ConnectionState
    at_s: float
    error: Exception | None = None


class ConnectionMonitor:
    """
    Tracks live-channel connectivity.

    Emits `connection.update` with a `ConnectionUpdate` on every state change, and
    `reconnected` whenever the state enters `connected`. It never reconnects by itself;
    that belongs to the transport.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.events = AsyncEventEmitter()
        self._clock = clock
        self._state: ConnectionState = "disconnected"
        self._last_activity_s = clock()
        self._missed_heartbeats = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == "connected"

    def on(self, event: str, listener: Listener) -> Unsubscribe:
        return self.events.on(event, listener)

    async def set_state(self, state: ConnectionState, *, error: Exception | None = None) -> None:
        previous = self._state
        if state == previous:
            return
        self._state = state
        now = self._clock()
        if state == "connected":
            self._last_activity_s = now
            self._missed_heartbeats = 0
        logger.info("connection %s -> %s", previous, state)
        await self.events.emit(
            "connection.update",
            ConnectionUpdate(previous=previous, current=state, at_s=now, error=error),
        )
        if state == "connected":
            await self.events.emit("reconnected")

    async def wait_connected(self, *, timeout_s: float | None = None) -> None:
        if self.is_connected:
            return
        await self.events.wait_for(
            "connection.update",
            predicate=lambda u: u.current == "connected",
            timeout_s=timeout_s,
        )

    def touch(self) -> None:
        """Record live-channel activity (any frame received)."""

        self._last_activity_s = self._clock()
        self._missed_heartbeats = 0

    def record_missed_heartbeat(self) -> None:
        self._missed_heartbeats += 1

    def health(self, *, now_s: float | None = None) -> HealthStatus:
        if self._state != "connected":
            return "disconnected"
        now = self._clock() if now_s is None else now_s
        idle = now - self._last_activity_s
        if idle >= CRITICAL_CONNECTION_S:
            return "critical"
        if idle >= STALE_CONNECTION_S:
            return "stale"
        if self._missed_heartbeats > 0:
            return "degraded"
        return "healthy"
