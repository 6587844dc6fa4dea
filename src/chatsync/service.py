from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .api import HttpRemoteApi, RemoteApi
from .cache import KIND_CHARTS, KIND_DAILY_REPORT, KIND_PRIORITY, ExpiryCache
from .config import ServiceConfig, SyncConfig
from .connection.live import LiveChannel, LiveTransport
from .connection.monitor import ConnectionMonitor, ConnectionUpdate, HealthStatus
from .exceptions import AuthError, ChatSyncError, ValidationError
from .kvstore import FileKeyValueStore, InMemoryKeyValueStore, KeyValueStore
from .normalize import normalize_content
from .outbound import OutboundQueue
from .router import PushEventRouter
from .store import ChangeListener, MessageStore
from .sync import SyncCoordinator
from .types import Conversation, Draft, Message, OutboundItem, SyncSession
from .util.events import AsyncEventEmitter, Listener, Unsubscribe

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIME_PERIODS = ("today", "week", "month")


class ChatSyncService:
    """
    High-level async facade over the sync engine.

    Owns one instance of every component and wires them together: live events flow
    through the router into the store, reconnects drain the outbound queue, and
    analytics reads go through the expiry cache. Build it once per signed-in session
    and `close()` it on sign-out.

    Events (subscribe with `on`): `sync.update`, `sync.warning`, `outbound.failed`,
    `outbound.sent`, `connection.update`, `auth.error`.
    """

    def __init__(
        self,
        *,
        config: SyncConfig | None = None,
        api: RemoteApi | None = None,
        kv: KeyValueStore | None = None,
        transport: LiveTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or SyncConfig()
        self.events = AsyncEventEmitter()
        self.api: RemoteApi = api or HttpRemoteApi(self.config)
        self.kv: KeyValueStore = kv or InMemoryKeyValueStore()

        self.monitor = ConnectionMonitor()
        self.store = MessageStore(
            on_read=self._send_read_receipts, mark_read_window_s=self.config.mark_read_window_s
        )
        self.cache = ExpiryCache(self.kv, clock=clock)
        self.sync = SyncCoordinator(
            self.store, self.api, config=self.config, events=self.events, clock=clock
        )
        self.router = PushEventRouter(
            self.store,
            my_user_id=self.config.user_id,
            accept=self.sync.is_active,
            on_membership=self.sync.on_membership,
        )
        self.outbound = OutboundQueue(
            monitor=self.monitor,
            store=self.store,
            api=self.api,
            kv=self.kv,
            my_user_id=self.config.user_id,
            max_retries=self.config.max_retries,
            retry_cooldown_s=self.config.retry_cooldown_s,
            clock=clock,
            events=self.events,
        )
        self.live = LiveChannel(self.config, self.monitor, self.router, transport=transport)

        self._selected: str | None = None
        self.monitor.on("connection.update", self._on_connection_update)

    @classmethod
    async def create(
        cls,
        config: ServiceConfig | None = None,
        *,
        api: RemoteApi | None = None,
        transport: LiveTransport | None = None,
    ) -> ChatSyncService:
        """
        Convenience constructor: opens the file store (if `storage_dir` is set) and
        restores outbound messages left over from a previous run.
        """

        config = config or ServiceConfig()
        kv: KeyValueStore
        if config.storage_dir is not None:
            kv = await FileKeyValueStore.open(config.storage_dir)
        else:
            kv = InMemoryKeyValueStore()
        service = cls(config=config.sync, api=api, kv=kv, transport=transport)
        restored = await service.outbound.restore()
        if restored:
            logger.info("restored %d queued outbound messages", restored)
        return service

    # --- lifecycle ----------------------------------------------------------

    async def start(self) -> bool:
        """Open the live channel. Returns False if it is still reconnecting in the background."""

        return await self.live.start()

    async def close(self) -> None:
        await self.live.close()
        await self.outbound.close()
        await self.sync.close()
        await self.store.close()
        self.events.remove_all_listeners()
        self.monitor.events.remove_all_listeners()
        self._selected = None

    def on(self, event: str, listener: Listener) -> Unsubscribe:
        return self.events.on(event, listener)

    async def _on_connection_update(self, update: ConnectionUpdate) -> None:
        await self.events.emit("connection.update", update)

    def connection_health(self) -> HealthStatus:
        return self.monitor.health()

    # --- conversations ------------------------------------------------------

    def subscribe(self, conversation_id: str, on_change: ChangeListener) -> Unsubscribe:
        return self.store.subscribe(conversation_id, on_change)

    def get_messages(self, conversation_id: str, *, limit: int | None = None) -> list[Message]:
        return self.store.get_messages(conversation_id, limit=limit)

    async def select_conversation(self, conversation: Conversation) -> SyncSession:
        """Make `conversation` the open one (closing any other) and sync it."""

        if self._selected is not None and self._selected != conversation.id:
            await self.deselect_conversation(self._selected)
        self._selected = conversation.id
        return await self.sync.start_sync(conversation)

    async def deselect_conversation(self, conversation_id: str) -> None:
        if self._selected == conversation_id:
            self._selected = None
        await self.sync.stop_sync(conversation_id)

    def get_sync_state(self, conversation_id: str) -> SyncSession:
        return self.sync.get_session(conversation_id)

    async def retry_sync(self, conversation_id: str) -> SyncSession:
        return await self.sync.retry(conversation_id)

    async def refresh(self, conversation_id: str, *, force: bool = False) -> SyncSession:
        return await self.sync.refresh(conversation_id, force=force)

    async def load_older(self, conversation_id: str) -> int:
        return await self.sync.load_next_page(conversation_id)

    async def fetch_new_messages(self, conversation_id: str) -> int:
        return await self.sync.fetch_new_messages(conversation_id)

    # --- sending and receipts -----------------------------------------------

    async def send_message(self, conversation_id: str, content: Any) -> str:
        """
        Send `content` (text, a content dataclass, or a content mapping).

        The message shows up locally right away as `queued`. Network failures never
        raise here: the message stays queued and is retried, and terminal failures are
        reported via `outbound.failed`. Returns the client id of the draft.
        """

        draft = Draft(client_id=secrets.token_hex(16), content=normalize_content(content))
        await self.outbound.submit(conversation_id, draft)
        return draft.client_id

    async def cancel_outbound(self, client_id: str) -> bool:
        return await self.outbound.cancel(client_id)

    async def retry_outbound(self, client_id: str) -> bool:
        return await self.outbound.retry(client_id)

    def pending_outbound(self, conversation_id: str | None = None) -> list[OutboundItem]:
        return self.outbound.pending(conversation_id)

    def mark_read(self, conversation_id: str, message_ids: list[str]) -> None:
        self.store.mark_read(conversation_id, message_ids)

    async def _send_read_receipts(self, conversation_id: str, message_ids: list[str]) -> None:
        try:
            await self.api.mark_read(conversation_id, message_ids)
        except AuthError as e:
            await self.events.emit("auth.error", e)
        except ChatSyncError as e:
            logger.warning("read receipts for %s not delivered: %s", conversation_id, e)

    # --- analytics ----------------------------------------------------------

    async def get_cached(
        self, kind: str, user_id: str, conversation_id: str, scope: str | None = None
    ) -> Any:
        entry = await self.cache.get(kind, user_id, conversation_id, scope)
        return entry.payload if entry is not None else None

    async def _cached(
        self,
        kind: str,
        conversation_id: str,
        fetch: Callable[[], Awaitable[T]],
        *,
        scope: str | None = None,
        force: bool = False,
    ) -> T:
        try:
            return await self.cache.get_or_fetch(
                kind, self.config.user_id, conversation_id, fetch, scope=scope, force=force
            )
        except AuthError as e:
            await self.events.emit("auth.error", e)
            raise

    async def priority_overview(
        self, conversation_id: str, time_period: str = "today", *, force: bool = False
    ) -> Any:
        if time_period not in TIME_PERIODS:
            raise ValidationError(f"unknown time period: {time_period!r}")
        return await self._cached(
            KIND_PRIORITY,
            conversation_id,
            lambda: self.api.fetch_priority_overview(conversation_id, time_period),
            scope=time_period,
            force=force,
        )

    async def daily_report(self, conversation_id: str, *, force: bool = False) -> Any:
        return await self._cached(
            KIND_DAILY_REPORT,
            conversation_id,
            lambda: self.api.fetch_daily_report(conversation_id),
            force=force,
        )

    async def chart_series(self, conversation_id: str, *, force: bool = False) -> Any:
        return await self._cached(
            KIND_CHARTS,
            conversation_id,
            lambda: self.api.fetch_chart_series(conversation_id),
            force=force,
        )
