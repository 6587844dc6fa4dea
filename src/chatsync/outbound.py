from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from .api import RemoteApi
from .connection.monitor import ConnectionMonitor
from .constants import MAX_RETRIES, OUTBOUND_QUEUE_KEY, RETRY_COOLDOWN_S
from .exceptions import AuthError, ChatSyncError, TransientNetworkError, ValidationError
from .kvstore import KeyValueStore
from .normalize import draft_from_dict, draft_to_dict, local_message_for_draft
from .store import MessageStore
from .types import Draft, OutboundItem
from .util import json as jsonutil
from .util.asyncio import cancel_suppress, ensure_task
from .util.events import AsyncEventEmitter

logger = logging.getLogger(__name__)

AttemptOutcome = Literal["sent", "retry", "failed", "stop"]


def _item_to_dict(item: OutboundItem) -> dict[str, Any]:
    return {
        "draft": draft_to_dict(item.draft),
        "conversation_id": item.conversation_id,
        "enqueued_at_s": item.enqueued_at_s,
        "retry_count": item.retry_count,
        # An interrupted in-flight send is retried after reload.
        "status": "pending" if item.status == "in_flight" else item.status,
        "last_error": item.last_error,
    }


def _item_from_dict(d: dict[str, Any]) -> OutboundItem:
    status = d.get("status") or "pending"
    if status not in ("pending", "failed"):
        status = "pending"
    return OutboundItem(
        draft=draft_from_dict(d["draft"]),
        conversation_id=str(d["conversation_id"]),
        enqueued_at_s=float(d.get("enqueued_at_s") or 0.0),
        retry_count=int(d.get("retry_count") or 0),
        status=status,
        last_error=d.get("last_error"),
    )


class OutboundQueue:
    """
    Unsent/unconfirmed outgoing messages with per-conversation lanes.

    Items are delivered FIFO; a lane (one conversation) never has two sends in flight.
    Each item gets `max_retries` attempts separated by `retry_cooldown_s`; after that
    it is marked `failed` and stays queued until cancelled or retried by the caller.
    The queue drains automatically whenever the connection monitor reports a
    reconnect.

    Events (on `self.events`):
    - `outbound.sent(item, message)`
    - `outbound.failed(item)`
    - `auth.error(exc)`
    """

    def __init__(
        self,
        *,
        monitor: ConnectionMonitor,
        store: MessageStore,
        api: RemoteApi,
        kv: KeyValueStore,
        my_user_id: str,
        max_retries: int = MAX_RETRIES,
        retry_cooldown_s: float = RETRY_COOLDOWN_S,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        events: AsyncEventEmitter | None = None,
    ) -> None:
        self.events = events or AsyncEventEmitter()
        self._monitor = monitor
        self._store = store
        self._api = api
        self._kv = kv
        self._my_user_id = my_user_id
        self._max_retries = max_retries
        self._cooldown_s = retry_cooldown_s
        self._clock = clock
        self._sleep = sleep

        self._items: dict[str, OutboundItem] = {}
        self._lanes: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._unsubscribe = monitor.on("reconnected", self._on_reconnected)

    def _lane(self, conversation_id: str) -> asyncio.Lock:
        lock = self._lanes.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._lanes[conversation_id] = lock
        return lock

    def pending(self, conversation_id: str | None = None) -> list[OutboundItem]:
        return [
            item
            for item in self._items.values()
            if conversation_id is None or item.conversation_id == conversation_id
        ]

    def get(self, client_id: str) -> OutboundItem | None:
        return self._items.get(client_id)

    async def _persist(self) -> None:
        payload = [_item_to_dict(item) for item in self._items.values()]
        try:
            if payload:
                await self._kv.set(OUTBOUND_QUEUE_KEY, jsonutil.dumps(payload))
            else:
                await self._kv.remove(OUTBOUND_QUEUE_KEY)
        except Exception as e:
            logger.warning("failed to persist outbound queue: %s", e)

    async def restore(self) -> int:
        """Reload items persisted by a previous session. Returns how many were restored."""

        try:
            raw = await self._kv.get(OUTBOUND_QUEUE_KEY)
        except Exception as e:
            logger.warning("failed to read outbound queue: %s", e)
            return 0
        if not raw:
            return 0
        try:
            records = jsonutil.loads(raw)
            if not isinstance(records, list):
                raise ValidationError("outbound queue record is not a list")
        except (ValueError, ValidationError) as e:
            logger.warning("discarding unreadable outbound queue: %s", e)
            return 0

        restored = 0
        for rec in records:
            try:
                item = _item_from_dict(rec)
            except (KeyError, TypeError, ValueError, ValidationError) as e:
                logger.warning("skipping unreadable outbound item: %s", e)
                continue
            if item.draft.client_id not in self._items:
                self._items[item.draft.client_id] = item
                restored += 1
        return restored

    async def enqueue(self, conversation_id: str, draft: Draft) -> OutboundItem:
        existing = self._items.get(draft.client_id)
        if existing is not None:
            return existing
        item = OutboundItem(
            draft=draft, conversation_id=conversation_id, enqueued_at_s=self._clock()
        )
        self._items[draft.client_id] = item
        await self._persist()
        return item

    async def submit(self, conversation_id: str, draft: Draft) -> OutboundItem | None:
        """
        Show the draft locally and deliver it.

        When connected and the lane is idle, one direct attempt is made; otherwise (or
        if that attempt does not go through) the draft waits in the queue. Returns the
        queued item, or `None` if the direct send succeeded.
        """

        local = local_message_for_draft(
            draft,
            conversation_id=conversation_id,
            sender_id=self._my_user_id,
            timestamp_ms=int(self._clock() * 1000),
        )
        await self._store.append(local)
        item = await self.enqueue(conversation_id, draft)

        lane = self._lane(conversation_id)
        if not self._monitor.is_connected or lane.locked():
            return item
        if self._next_pending(conversation_id) is not item:
            # Older drafts of this conversation go first.
            self._schedule(self._drain_lane(conversation_id))
            return item

        async with lane:
            outcome = await self._attempt(item)
        if outcome != "stop" and self._next_pending(conversation_id) is not None:
            # Retries and drafts queued behind the direct attempt.
            self._schedule(self._drain_lane(conversation_id))
        return None if outcome == "sent" else item

    async def cancel(self, client_id: str) -> bool:
        item = self._items.pop(client_id, None)
        if item is None:
            return False
        await self._persist()
        await self._store.update_status(item.conversation_id, client_id, "failed")
        return True

    async def retry(self, client_id: str) -> bool:
        """Give a failed item a fresh set of attempts."""

        item = self._items.get(client_id)
        if item is None or item.status != "failed":
            return False
        item.status = "pending"
        item.retry_count = 0
        item.last_error = None
        await self._persist()
        await self._store.update_status(item.conversation_id, client_id, "queued")
        if self._monitor.is_connected:
            self._schedule(self._drain_lane(item.conversation_id))
        return True

    def _schedule(self, coro: Any) -> None:
        if self._closed:
            coro.close()
            return
        task = ensure_task(coro, name="chatsync.outbound.drain")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _on_reconnected(self) -> None:
        self._schedule(self.drain())

    async def drain(self) -> None:
        """Deliver every pending item, lanes in parallel, items within a lane in order."""

        if not self._monitor.is_connected:
            return
        conversations: list[str] = []
        for item in self._items.values():
            if item.status == "pending" and item.conversation_id not in conversations:
                conversations.append(item.conversation_id)
        if conversations:
            await asyncio.gather(*(self._drain_lane(c) for c in conversations))

    def _next_pending(self, conversation_id: str) -> OutboundItem | None:
        for item in self._items.values():
            if item.conversation_id == conversation_id and item.status == "pending":
                return item
        return None

    async def _drain_lane(self, conversation_id: str) -> None:
        lane = self._lane(conversation_id)
        if lane.locked():
            # Another drain owns this lane and will pick up anything queued meanwhile.
            return
        async with lane:
            while not self._closed and self._monitor.is_connected:
                item = self._next_pending(conversation_id)
                if item is None:
                    return
                if not await self._deliver(item):
                    if self._items.get(item.draft.client_id) is item and item.status == "pending":
                        # Paused by disconnect or auth failure; resume on reconnect.
                        return

    async def _attempt(self, item: OutboundItem) -> AttemptOutcome:
        """One send attempt. Transient and unmapped failures count against `max_retries`."""

        client_id = item.draft.client_id
        item.status = "in_flight"
        try:
            remote = await self._api.send_message(item.conversation_id, item.draft)
        except AuthError as e:
            item.status = "pending"
            item.last_error = str(e)
            await self._persist()
            logger.error("send for %s refused by auth: %s", item.conversation_id, e)
            await self.events.emit("auth.error", e)
            return "stop"
        except TransientNetworkError as e:
            return await self._count_failure(item, e)
        except ChatSyncError as e:
            item.last_error = str(e)
            logger.error("send for %s rejected: %s", item.conversation_id, e)
            await self._fail(item)
            return "failed"
        except asyncio.CancelledError:
            item.status = "pending"
            raise
        except Exception as e:
            # An unmapped error from the api layer still has to end in retry or failure.
            logger.exception("unexpected error sending to %s", item.conversation_id)
            return await self._count_failure(item, e)

        if self._items.pop(client_id, None) is not None:
            await self._persist()
        await self._store.confirm_sent(item.conversation_id, client_id, remote)
        await self.events.emit("outbound.sent", item, remote)
        return "sent"

    async def _count_failure(self, item: OutboundItem, error: Exception) -> AttemptOutcome:
        item.retry_count += 1
        item.status = "pending"
        item.last_error = str(error) or type(error).__name__
        logger.warning(
            "send attempt %d/%d for %s failed: %s",
            item.retry_count,
            self._max_retries,
            item.conversation_id,
            item.last_error,
        )
        if item.retry_count >= self._max_retries:
            await self._fail(item)
            return "failed"
        await self._persist()
        return "retry"

    async def _fail(self, item: OutboundItem) -> None:
        client_id = item.draft.client_id
        if self._items.get(client_id) is not item:
            return  # cancelled while in flight
        item.status = "failed"
        await self._persist()
        await self._store.update_status(item.conversation_id, client_id, "failed")
        await self.events.emit("outbound.failed", item)

    async def _deliver(self, item: OutboundItem) -> bool:
        """Attempt `item` until it is sent, fails for good, or delivery has to pause."""

        client_id = item.draft.client_id
        while True:
            if item.retry_count > 0:
                await self._sleep(self._cooldown_s)
            if not self._monitor.is_connected or self._closed:
                return False
            if self._items.get(client_id) is not item or item.status != "pending":
                return False  # cancelled during cooldown

            outcome = await self._attempt(item)
            if outcome == "retry":
                continue
            return outcome == "sent"

    async def join(self) -> None:
        """Wait until all background drains scheduled so far have finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        self._unsubscribe()
        for task in list(self._tasks):
            await cancel_suppress(task)
        self._tasks.clear()
