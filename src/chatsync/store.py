from __future__ import annotations

import bisect
import logging
from collections.abc import Awaitable, Callable, Iterable

from .constants import MARK_READ_WINDOW_S
from .exceptions import DuplicateError
from .types import AppendResult, DeliveryStatus, Message, StoreChange
from .util.asyncio import Coalescer, shielded
from .util.events import AsyncEventEmitter, Unsubscribe

logger = logging.getLogger(__name__)

ChangeListener = Callable[[StoreChange], Awaitable[None] | None]
ReadFlush = Callable[[str, list[str]], Awaitable[None] | None]


class _ConversationLog:
    """
    Ordered message list for one conversation plus its dedup indexes.

    Order key is `(timestamp_ms, seq)`. Appends take increasing sequence numbers and
    prepended batches take decreasing ones, so equal timestamps keep insertion order
    and older pages land before what is already loaded.
    """

    __slots__ = ("keys", "items", "by_id", "by_event", "by_hash", "next_seq", "prev_seq")

    def __init__(self) -> None:
        self.keys: list[tuple[int, int]] = []
        self.items: list[Message] = []
        self.by_id: dict[str, Message] = {}
        self.by_event: dict[str, Message] = {}
        self.by_hash: dict[str, Message] = {}
        self.next_seq = 0
        self.prev_seq = 0

    def find_duplicate(self, msg: Message) -> Message | None:
        existing = self.by_id.get(msg.id)
        if existing is None and msg.remote_event_id:
            existing = self.by_event.get(msg.remote_event_id)
        if existing is None and msg.content_hash:
            existing = self.by_hash.get(msg.content_hash)
        return existing

    def insert(self, msg: Message, seq: int) -> None:
        key = (msg.timestamp_ms, seq)
        idx = bisect.bisect_right(self.keys, key)
        self.keys.insert(idx, key)
        self.items.insert(idx, msg)
        self.by_id[msg.id] = msg
        if msg.remote_event_id:
            self.by_event[msg.remote_event_id] = msg
        if msg.content_hash:
            self.by_hash[msg.content_hash] = msg


class MessageStore:
    """
    Ordered, deduplicated per-conversation message log.

    A message is a duplicate when its `id`, `remote_event_id` or `content_hash` matches
    any stored message of the same conversation; duplicates are absorbed silently.
    Subscribers of a conversation are notified after every successful mutation.
    """

    def __init__(
        self,
        *,
        on_read: ReadFlush | None = None,
        mark_read_window_s: float = MARK_READ_WINDOW_S,
    ) -> None:
        self._logs: dict[str, _ConversationLog] = {}
        self._events = AsyncEventEmitter()
        self._on_read = on_read
        self._read_coalescer: Coalescer[str, str] = Coalescer(
            mark_read_window_s, self._flush_read, name="chatsync.mark_read"
        )

    def _log(self, conversation_id: str) -> _ConversationLog:
        log = self._logs.get(conversation_id)
        if log is None:
            log = _ConversationLog()
            self._logs[conversation_id] = log
        return log

    def subscribe(self, conversation_id: str, on_change: ChangeListener) -> Unsubscribe:
        return self._events.on(
            f"change:{conversation_id}",
            shielded(on_change, label=f"store subscriber for {conversation_id}"),
        )

    async def _notify(self, change: StoreChange) -> None:
        await self._events.emit(f"change:{change.conversation_id}", change)

    async def append(self, message: Message, *, strict: bool = False) -> AppendResult:
        """Insert `message` in order. With `strict=True` a duplicate raises `DuplicateError`."""

        log = self._log(message.conversation_id)
        existing = log.find_duplicate(message)
        if existing is not None:
            if strict:
                raise DuplicateError(
                    f"message {message.id} duplicates {existing.id} in {message.conversation_id}"
                )
            logger.debug(
                "duplicate message %s in %s (matches %s)",
                message.id,
                message.conversation_id,
                existing.id,
            )
            return AppendResult(inserted=False, message=existing)

        log.next_seq += 1
        log.insert(message, log.next_seq)
        await self._notify(
            StoreChange(
                kind="append",
                conversation_id=message.conversation_id,
                message_ids=(message.id,),
            )
        )
        return AppendResult(inserted=True, message=message)

    async def prepend(self, conversation_id: str, older: Iterable[Message]) -> int:
        """
        Insert an older page. Duplicates (within the batch too) are skipped.

        Returns the number of messages inserted.
        """

        log = self._log(conversation_id)
        fresh: list[Message] = []
        for msg in older:
            if msg.conversation_id != conversation_id:
                logger.warning(
                    "dropping message %s for %s from page of %s",
                    msg.id,
                    msg.conversation_id,
                    conversation_id,
                )
                continue
            if log.find_duplicate(msg) is not None:
                continue
            if any(
                m.id == msg.id
                or (msg.remote_event_id and m.remote_event_id == msg.remote_event_id)
                or (msg.content_hash and m.content_hash == msg.content_hash)
                for m in fresh
            ):
                continue
            fresh.append(msg)

        if not fresh:
            return 0

        base = log.prev_seq - len(fresh)
        for i, msg in enumerate(fresh):
            log.insert(msg, base + i)
        log.prev_seq = base

        await self._notify(
            StoreChange(
                kind="prepend",
                conversation_id=conversation_id,
                message_ids=tuple(m.id for m in fresh),
            )
        )
        return len(fresh)

    async def update_status(
        self, conversation_id: str, message_id: str, status: DeliveryStatus
    ) -> bool:
        log = self._logs.get(conversation_id)
        msg = log.by_id.get(message_id) if log else None
        if msg is None and log is not None:
            # Status pushes may reference the upstream event id rather than our id.
            msg = log.by_event.get(message_id)
        if msg is None:
            return False
        if msg.delivery_status == status:
            return True
        msg.delivery_status = status
        await self._notify(
            StoreChange(kind="status", conversation_id=conversation_id, message_ids=(msg.id,))
        )
        return True

    async def confirm_sent(self, conversation_id: str, local_id: str, remote: Message) -> bool:
        """
        Mark an optimistic local message as `sent` and index the server's identity for it.

        The server id, event id and hash become aliases of the local entry, so later
        status pushes and echoes of the same send resolve to it. If the local copy is
        gone (cleared or never stored), the server message is appended instead.
        """

        log = self._logs.get(conversation_id)
        local = log.by_id.get(local_id) if log else None
        if log is None or local is None:
            result = await self.append(remote)
            return result.inserted

        log.by_id.setdefault(remote.id, local)
        if remote.remote_event_id:
            log.by_event.setdefault(remote.remote_event_id, local)
        if remote.content_hash:
            log.by_hash.setdefault(remote.content_hash, local)
        return await self.update_status(conversation_id, local_id, "sent")

    def mark_read(self, conversation_id: str, message_ids: list[str]) -> None:
        """Queue read receipts; calls inside the window are merged into one flush."""

        if not message_ids:
            return
        self._read_coalescer.add(conversation_id, list(message_ids))

    async def _flush_read(self, conversation_id: str, message_ids: list[str]) -> None:
        if self._on_read is None:
            return
        res = self._on_read(conversation_id, message_ids)
        if res is not None:
            await res

    async def flush_reads(self) -> None:
        await self._read_coalescer.flush_all()

    async def clear(self, conversation_id: str) -> None:
        log = self._logs.pop(conversation_id, None)
        if log is None or not log.items:
            return
        await self._notify(StoreChange(kind="clear", conversation_id=conversation_id))

    async def close(self) -> None:
        await self._read_coalescer.close()
        self._events.remove_all_listeners()
        self._logs.clear()

    def count(self, conversation_id: str) -> int:
        log = self._logs.get(conversation_id)
        return len(log.items) if log else 0

    def get_messages(self, conversation_id: str, *, limit: int | None = None) -> list[Message]:
        log = self._logs.get(conversation_id)
        msgs = log.items if log else []
        if limit is None:
            return list(msgs)
        if limit <= 0:
            return []
        return msgs[-limit:]

    def last_message(self, conversation_id: str) -> Message | None:
        log = self._logs.get(conversation_id)
        return log.items[-1] if log and log.items else None

    def oldest_message(self, conversation_id: str) -> Message | None:
        log = self._logs.get(conversation_id)
        return log.items[0] if log and log.items else None

    def find_message(self, conversation_id: str, message_id: str) -> Message | None:
        if not message_id:
            return None
        log = self._logs.get(conversation_id)
        if log is None:
            return None
        return log.by_id.get(message_id) or log.by_event.get(message_id)
