from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .api import RemoteApi
from .config import SyncConfig
from .exceptions import AuthError, ChatSyncError, SyncRejectedError
from .store import MessageStore
from .types import Conversation, Membership, SyncErrorRecord, SyncSession, SyncState
from .util.asyncio import with_timeout
from .util.events import AsyncEventEmitter

logger = logging.getLogger(__name__)

T = TypeVar("T")

DETAILS_CONNECTING = "Connecting to chat room..."
DETAILS_LOADING = "Getting your messages..."
DETAILS_LOADED = "Messages loaded successfully"
DETAILS_FAILED = "Failed to load messages"


class SyncCoordinator:
    """
    Drives the per-conversation sync state machine:

        IDLE -> PENDING -> APPROVED -> COMPLETE | REJECTED

    Each `start_sync` bumps the conversation's epoch. Every continuation after an
    await re-checks the epoch it captured and quietly drops its result when a newer
    sync (or a `stop_sync`) has happened in the meantime.

    Events (on `events`):
    - `sync.update(session_snapshot)`
    - `sync.warning(conversation_id, exc)` for soft failures (live registration)
    """

    def __init__(
        self,
        store: MessageStore,
        api: RemoteApi,
        *,
        config: SyncConfig | None = None,
        events: AsyncEventEmitter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._api = api
        self.config = config or SyncConfig()
        self.events = events or AsyncEventEmitter()
        self._clock = clock

        self._sessions: dict[str, SyncSession] = {}
        self._epochs: dict[str, int] = {}
        self._conversations: dict[str, Conversation] = {}

    # --- state --------------------------------------------------------------

    def is_active(self, conversation_id: str) -> bool:
        """True while the conversation is selected (its live events should be applied)."""

        return conversation_id in self._sessions

    def get_session(self, conversation_id: str) -> SyncSession:
        session = self._sessions.get(conversation_id)
        if session is None:
            return SyncSession(
                conversation_id=conversation_id, epoch=self._epochs.get(conversation_id, 0)
            )
        return session.snapshot()

    def _current(self, conversation_id: str, epoch: int) -> SyncSession | None:
        session = self._sessions.get(conversation_id)
        if session is None or session.epoch != epoch:
            return None
        return session

    async def _publish(self, session: SyncSession) -> None:
        await self.events.emit("sync.update", session.snapshot())

    async def _call(self, what: str, coro: Awaitable[T]) -> T:
        return await with_timeout(self.config.request_timeout_s, coro, what=what)

    def _record_error(self, session: SyncSession, exc: BaseException | str) -> None:
        session.errors.append(
            SyncErrorRecord(message=str(exc), timestamp_ms=int(self._clock() * 1000))
        )

    # --- operations ---------------------------------------------------------

    async def start_sync(self, conversation: Conversation) -> SyncSession:
        """
        Run a full sync for `conversation` and return the resulting session snapshot.

        Conversations the user has not joined are left untouched. A failed history
        load ends in `REJECTED` (retryable via `retry`); it is not raised.
        """

        cid = conversation.id
        self._conversations[cid] = conversation
        if conversation.membership != "join":
            logger.debug("not syncing %s: membership is %s", cid, conversation.membership)
            return self.get_session(cid)

        epoch = self._epochs.get(cid, 0) + 1
        self._epochs[cid] = epoch
        session = SyncSession(
            conversation_id=cid, epoch=epoch, state="PENDING", details=DETAILS_CONNECTING
        )
        self._sessions[cid] = session
        await self._publish(session)

        try:
            await self._call("register live updates", self._api.register_live(cid))
        except Exception as e:
            if not isinstance(e, ChatSyncError):
                logger.exception("unexpected error registering live updates for %s", cid)
            logger.warning("live updates unavailable for %s: %s", cid, e)
            if self._current(cid, epoch) is None:
                return self.get_session(cid)
            session.live_updates = False
            await self.events.emit("sync.warning", cid, e)
        else:
            if self._current(cid, epoch) is None:
                return self.get_session(cid)
            session.live_updates = True

        await self._store.clear(cid)
        self._set(session, "APPROVED", 50, DETAILS_LOADING)
        await self._publish(session)

        try:
            page = await self._call(
                "load history", self._api.fetch_history(cid, 0, self.config.page_size)
            )
            if not page.success:
                raise SyncRejectedError(cid, ChatSyncError("server reported failure"))
        except Exception as e:
            if not isinstance(e, ChatSyncError):
                logger.exception("unexpected error loading history for %s", cid)
            if self._current(cid, epoch) is None:
                logger.debug("discarding failure of superseded sync for %s: %s", cid, e)
                return self.get_session(cid)
            logger.warning("sync of %s rejected: %s", cid, e)
            self._reject(session, e)
            await self._publish(session)
            if isinstance(e, AuthError):
                await self.events.emit("auth.error", e)
            return session.snapshot()

        if self._current(cid, epoch) is None:
            logger.debug("discarding result of superseded sync for %s", cid)
            return self.get_session(cid)

        inserted = await self._store.prepend(cid, page.messages)
        session.page = 0
        session.has_more = page.has_more
        # Counts reflect the page as served; `inserted` can be smaller when a live
        # event for the same message landed while the page was in flight.
        session.processed_count = len(page.messages)
        session.total_count = len(page.messages)
        self._set(session, "COMPLETE", 100, DETAILS_LOADED)
        logger.info("synced %s: %d messages (more=%s)", cid, inserted, page.has_more)
        await self._publish(session)
        return session.snapshot()

    @staticmethod
    def _set(session: SyncSession, state: SyncState, progress: int, details: str) -> None:
        session.state = state
        session.progress_percent = progress
        session.details = details

    def _reject(self, session: SyncSession, exc: BaseException) -> None:
        self._record_error(session, exc)
        self._set(session, "REJECTED", 0, DETAILS_FAILED)

    async def load_next_page(self, conversation_id: str) -> int:
        """Prepend the next older page. Returns the number of messages inserted."""

        session = self._sessions.get(conversation_id)
        if session is None or session.state != "COMPLETE" or not session.has_more:
            return 0
        epoch = session.epoch
        next_page = session.page + 1
        try:
            page = await self._call(
                "load older messages",
                self._api.fetch_history(conversation_id, next_page, self.config.page_size),
            )
        except ChatSyncError as e:
            logger.warning("loading page %d of %s failed: %s", next_page, conversation_id, e)
            if self._current(conversation_id, epoch) is not None:
                self._record_error(session, e)
                await self._publish(session)
            return 0

        if self._current(conversation_id, epoch) is None or not page.success:
            return 0
        inserted = await self._store.prepend(conversation_id, page.messages)
        session.page = next_page
        session.has_more = page.has_more
        session.processed_count += inserted
        session.total_count += inserted
        await self._publish(session)
        return inserted

    async def fetch_new_messages(self, conversation_id: str) -> int:
        """
        Pull messages newer than the last one held locally.

        Manual fallback for when live updates are unavailable. Returns how many
        new messages were stored.
        """

        session = self._sessions.get(conversation_id)
        if session is None or session.state != "COMPLETE":
            return 0
        epoch = session.epoch
        last = self._store.last_message(conversation_id)
        last_event_id = (last.remote_event_id or last.id) if last else ""
        try:
            messages = await self._call(
                "fetch new messages",
                self._api.fetch_new_messages(conversation_id, last_event_id),
            )
        except ChatSyncError as e:
            logger.warning("fetching new messages for %s failed: %s", conversation_id, e)
            return 0

        if self._current(conversation_id, epoch) is None:
            return 0
        inserted = 0
        for msg in messages:
            if msg.conversation_id != conversation_id:
                continue
            if (await self._store.append(msg)).inserted:
                inserted += 1
        if inserted:
            session.processed_count += inserted
            session.total_count += inserted
            await self._publish(session)
        return inserted

    async def retry(self, conversation_id: str) -> SyncSession:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return self.get_session(conversation_id)
        return await self.start_sync(conversation)

    async def refresh(self, conversation_id: str, *, force: bool = False) -> SyncSession:
        """Catch up on new messages, or resync from scratch when forced or not loaded."""

        session = self._sessions.get(conversation_id)
        if not force and session is not None and session.state == "COMPLETE":
            await self.fetch_new_messages(conversation_id)
            return self.get_session(conversation_id)
        return await self.retry(conversation_id)

    async def stop_sync(self, conversation_id: str) -> None:
        self._epochs[conversation_id] = self._epochs.get(conversation_id, 0) + 1
        self._sessions.pop(conversation_id, None)
        self._conversations.pop(conversation_id, None)
        await self._store.clear(conversation_id)

    async def on_membership(self, conversation_id: str, membership: Membership) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return
        previous = conversation.membership
        conversation.membership = membership
        if membership == previous:
            return
        if membership == "join":
            logger.info("joined %s, starting sync", conversation_id)
            await self.start_sync(conversation)
        elif previous == "join":
            logger.info("left %s (%s), stopping sync", conversation_id, membership)
            await self._leave(conversation_id)

    async def _leave(self, conversation_id: str) -> None:
        # The conversation stays selected so that a later re-join syncs it again.
        self._epochs[conversation_id] = self._epochs.get(conversation_id, 0) + 1
        self._sessions.pop(conversation_id, None)
        await self._store.clear(conversation_id)
        await self.events.emit("sync.update", self.get_session(conversation_id))

    async def close(self) -> None:
        for cid in list(self._sessions):
            self._epochs[cid] = self._epochs.get(cid, 0) + 1
        self._sessions.clear()
        self._conversations.clear()
