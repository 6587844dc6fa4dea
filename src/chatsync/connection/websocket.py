from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any

import websockets
from websockets.protocol import State

from ..exceptions import TransportError


@dataclass(slots=True)
class WebSocketConfig:
    url: str
    connect_timeout_s: float = 20.0
    # Largest inbound frame accepted, in bytes. History pushes can be large.
    max_frame_bytes: int | None = 4 * 1024 * 1024
    extra_headers: dict[str, str] = field(default_factory=dict)


def _headers_kwarg() -> str:
    # websockets>=15 renamed `extra_headers` -> `additional_headers`.
    params = inspect.signature(websockets.connect).parameters
    return "additional_headers" if "additional_headers" in params else "extra_headers"


def _connection_is_open(ws: Any) -> bool:
    state = getattr(ws, "state", None)
    if state is not None:
        return bool(state == State.OPEN)
    # Legacy connection objects only expose `.closed`.
    return not bool(getattr(ws, "closed", False))


def _as_text(frame: Any) -> str:
    if isinstance(frame, str):
        return frame
    if isinstance(frame, (bytes, bytearray)):
        try:
            return bytes(frame).decode("utf-8")
        except UnicodeDecodeError as e:
            raise TransportError("binary live frame is not utf-8") from e
    raise TransportError(f"unexpected websocket frame type: {type(frame).__name__}")


class WebSocketTransport:
    """
    Live-channel socket. Every frame is one JSON document sent as text; binary
    frames from servers that send bytes anyway are decoded as UTF-8.

    Protocol-level pings are turned off because the channel runs its own
    `ping`/`pong` events and judges liveness from those.
    """

    def __init__(self, cfg: WebSocketConfig) -> None:
        self.cfg = cfg
        self._ws: Any | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and _connection_is_open(self._ws)

    async def connect(self) -> None:
        if self._ws is not None:
            return
        kwargs: dict[str, Any] = {
            "open_timeout": self.cfg.connect_timeout_s,
            "max_size": self.cfg.max_frame_bytes,
            "ping_interval": None,
            "ping_timeout": None,
        }
        if self.cfg.extra_headers:
            kwargs[_headers_kwarg()] = dict(self.cfg.extra_headers)
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(self.cfg.url, **kwargs), timeout=self.cfg.connect_timeout_s
            )
        except Exception as e:
            raise TransportError(f"cannot open live channel {self.cfg.url}: {e}") from e

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    def _require(self) -> Any:
        if self._ws is None:
            raise TransportError("live channel is not connected")
        return self._ws

    async def send(self, data: str) -> None:
        ws = self._require()
        try:
            await ws.send(data)
        except Exception as e:
            raise TransportError(f"live channel send failed: {e}") from e

    async def recv(self) -> str:
        ws = self._require()
        try:
            frame = await ws.recv()
        except Exception as e:
            raise TransportError(f"live channel recv failed: {e}") from e
        return _as_text(frame)
