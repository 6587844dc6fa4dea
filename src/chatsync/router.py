from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Literal, cast

from .exceptions import ValidationError
from .normalize import message_from_event, parse_delivery_status
from .store import MessageStore
from .types import MEMBERSHIPS, Membership

logger = logging.getLogger(__name__)

RouteOutcome = Literal["inserted", "duplicate", "status", "membership", "ignored", "dropped"]
MembershipHandler = Callable[[str, Membership], Awaitable[None] | None]

EVENT_NEW_MESSAGE = "message.new"
EVENT_STATUS = "message.status"
EVENT_MEMBERSHIP = "membership"


def _conversation_id_of(raw: Mapping[str, Any]) -> str | None:
    v = raw.get("conversationId") or raw.get("conversation_id") or raw.get("contactId")
    return str(v) if v else None


def classify_event(raw: Mapping[str, Any]) -> str:
    """Return the event kind, using the explicit `event` field or the payload shape."""

    explicit = raw.get("event") or raw.get("type")
    if explicit in (EVENT_NEW_MESSAGE, EVENT_STATUS, EVENT_MEMBERSHIP):
        return cast(str, explicit)
    if "message" in raw:
        return EVENT_NEW_MESSAGE
    if "membership" in raw:
        return EVENT_MEMBERSHIP
    if "status" in raw and ("messageId" in raw or "message_id" in raw):
        return EVENT_STATUS
    raise ValidationError(f"unrecognized live event: keys={sorted(raw)}")


class PushEventRouter:
    """
    Normalizes live events and applies them to the `MessageStore` in arrival order.

    Dedup is the store's job. The router only remembers message ids it already
    normalized during the current loop iteration so that a burst of identical
    deliveries is not normalized repeatedly.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        my_user_id: str | None = None,
        accept: Callable[[str], bool] | None = None,
        on_membership: MembershipHandler | None = None,
    ) -> None:
        self._store = store
        self._my_user_id = my_user_id
        self._accept = accept
        self._on_membership = on_membership
        self._seen_this_tick: set[tuple[str, str]] = set()
        self._reset_scheduled = False

    def _remember(self, key: tuple[str, str]) -> None:
        self._seen_this_tick.add(key)
        if not self._reset_scheduled:
            self._reset_scheduled = True
            asyncio.get_running_loop().call_soon(self._reset_seen)

    def _reset_seen(self) -> None:
        self._seen_this_tick.clear()
        self._reset_scheduled = False

    async def handle(self, raw: Any) -> RouteOutcome:
        try:
            if not isinstance(raw, Mapping):
                raise ValidationError(f"live event must be an object, got {type(raw).__name__}")
            kind = classify_event(raw)
            conversation_id = _conversation_id_of(raw)
            if conversation_id is None:
                raise ValidationError(f"{kind} event without conversation id")

            if kind == EVENT_MEMBERSHIP:
                return await self._handle_membership(conversation_id, raw)

            if self._accept is not None and not self._accept(conversation_id):
                return "ignored"

            if kind == EVENT_STATUS:
                return await self._handle_status(conversation_id, raw)
            return await self._handle_new_message(conversation_id, raw)
        except ValidationError as e:
            logger.warning("dropping malformed live event: %s", e)
            return "dropped"

    async def _handle_new_message(
        self, conversation_id: str, raw: Mapping[str, Any]
    ) -> RouteOutcome:
        body = raw.get("message")
        if not isinstance(body, Mapping):
            raise ValidationError("message event without message object")

        raw_id = body.get("id") or body.get("message_id") or body.get("messageId")
        tick_key = (conversation_id, str(raw_id)) if raw_id else None
        if tick_key is not None and tick_key in self._seen_this_tick:
            return "duplicate"

        msg = message_from_event(body, conversation_id=conversation_id, my_user_id=self._my_user_id)
        if tick_key is not None:
            self._remember(tick_key)

        result = await self._store.append(msg)
        return "inserted" if result.inserted else "duplicate"

    async def _handle_status(self, conversation_id: str, raw: Mapping[str, Any]) -> RouteOutcome:
        message_id = raw.get("messageId") or raw.get("message_id")
        if not message_id:
            raise ValidationError("status event without message id")
        status = parse_delivery_status(raw.get("status"))
        if not await self._store.update_status(conversation_id, str(message_id), status):
            logger.debug(
                "status %s for unknown message %s in %s", status, message_id, conversation_id
            )
            return "ignored"
        return "status"

    async def _handle_membership(
        self, conversation_id: str, raw: Mapping[str, Any]
    ) -> RouteOutcome:
        membership = raw.get("membership")
        if membership not in MEMBERSHIPS:
            raise ValidationError(f"unknown membership: {membership!r}")
        if self._on_membership is None:
            return "ignored"
        res = self._on_membership(conversation_id, cast(Membership, membership))
        if res is not None:
            await res
        return "membership"
