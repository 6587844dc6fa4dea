from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from ..config import SyncConfig
from ..exceptions import TransportError
from ..router import PushEventRouter
from ..util import json as jsonutil
from ..util.asyncio import cancel_suppress, ensure_task
from .monitor import ConnectionMonitor
from .websocket import WebSocketConfig, WebSocketTransport

logger = logging.getLogger(__name__)

# Frames that only prove the channel is alive.
_CONTROL_EVENTS = frozenset({"ping", "pong", "hello"})


class LiveTransport(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def send(self, data: str) -> None: ...

    async def recv(self) -> str: ...


def default_transport(config: SyncConfig) -> WebSocketTransport:
    headers = dict(config.headers)
    if config.auth_token:
        headers["Authorization"] = f"Bearer {config.auth_token}"
    return WebSocketTransport(
        WebSocketConfig(
            url=config.live_url,
            connect_timeout_s=config.connect_timeout_s,
            extra_headers=headers,
        )
    )


class LiveChannel:
    """
    Push channel: reads JSON frames off the transport and hands them to the router.

    Connection state is reported through the `ConnectionMonitor`. When the socket
    drops, the channel reconnects after `reconnect_delay_s` (unless closed or
    reconnects are disabled).
    """

    def __init__(
        self,
        config: SyncConfig,
        monitor: ConnectionMonitor,
        router: PushEventRouter,
        *,
        transport: LiveTransport | None = None,
    ) -> None:
        self.config = config
        self._monitor = monitor
        self._router = router
        self._transport: LiveTransport = transport or default_transport(config)

        self._recv_task: asyncio.Task[object] | None = None
        self._keepalive_task: asyncio.Task[object] | None = None
        self._reconnect_task: asyncio.Task[object] | None = None
        self._connect_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._transport.is_open

    async def connect(self) -> None:
        async with self._connect_lock:
            self._closed = False
            await cancel_suppress(self._keepalive_task)
            await cancel_suppress(self._recv_task)
            self._keepalive_task = None
            self._recv_task = None

            await self._monitor.set_state("connecting")
            try:
                await self._transport.connect()
            except TransportError as e:
                logger.warning("live channel connect failed: %s", e)
                await self._monitor.set_state("disconnected", error=e)
                raise

            self._recv_task = ensure_task(self._recv_loop(), name="chatsync.live.recv")
            self._keepalive_task = ensure_task(
                self._keepalive_loop(), name="chatsync.live.keepalive"
            )
            await self._monitor.set_state("connected")

    async def start(self) -> bool:
        """Connect, falling back to background reconnects if the first attempt fails."""

        try:
            await self.connect()
            return True
        except TransportError:
            if self.config.reconnect_delay_s is not None and not self._closed:
                self._reconnect_task = ensure_task(
                    self._reconnect_later(self.config.reconnect_delay_s),
                    name="chatsync.live.reconnect",
                )
            return False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        await cancel_suppress(self._reconnect_task)
        await cancel_suppress(self._keepalive_task)
        await cancel_suppress(self._recv_task)
        self._reconnect_task = None
        self._keepalive_task = None
        self._recv_task = None
        await self._transport.close()
        await self._monitor.set_state("disconnected")

    async def send(self, payload: Mapping[str, Any]) -> None:
        await self._transport.send(jsonutil.dumps(payload))

    async def _recv_loop(self) -> None:
        while not self._closed:
            try:
                data = await self._transport.recv()
            except TransportError as e:
                await self._on_lost(e)
                return

            self._monitor.touch()
            try:
                frame = jsonutil.loads(data)
            except ValueError:
                logger.warning("dropping undecodable live frame (%d chars)", len(data))
                continue
            if isinstance(frame, Mapping) and frame.get("event") in _CONTROL_EVENTS:
                continue
            try:
                await self._router.handle(frame)
            except Exception:
                # One bad frame must not end the loop while the socket is still up.
                logger.exception("live frame could not be routed")

    async def _on_lost(self, error: Exception) -> None:
        if self._closed:
            return
        logger.warning("live channel lost: %s", error)
        with contextlib.suppress(Exception):
            await self._transport.close()
        await cancel_suppress(self._keepalive_task)
        self._keepalive_task = None
        await self._monitor.set_state("disconnected", error=error)
        if self.config.reconnect_delay_s is not None:
            self._reconnect_task = ensure_task(
                self._reconnect_later(self.config.reconnect_delay_s),
                name="chatsync.live.reconnect",
            )

    async def _reconnect_later(self, delay_s: float) -> None:
        while not self._closed:
            await asyncio.sleep(delay_s)
            if self._closed:
                return
            try:
                await self.connect()
                return
            except TransportError:
                continue

    async def _keepalive_loop(self) -> None:
        interval = self.config.keep_alive_interval_s
        while not self._closed:
            await asyncio.sleep(interval)
            if self._closed:
                return

            health = self._monitor.health()
            if health == "critical":
                # No traffic for too long; treat the socket as dead.
                await cancel_suppress(self._recv_task)
                self._recv_task = None
                await self._on_lost(TransportError("live channel went silent"))
                return
            if health == "stale":
                self._monitor.record_missed_heartbeat()

            if self.is_open:
                try:
                    await self.send({"event": "ping"})
                except TransportError as e:
                    logger.debug("keepalive ping failed: %s", e)
                    self._monitor.record_missed_heartbeat()
