from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal, TypeAlias

from .constants import CACHE_KEY_PREFIX

DeliveryStatus = Literal["queued", "sent", "delivered", "read", "failed"]
Membership = Literal["join", "invite", "none"]
SyncState = Literal["IDLE", "PENDING", "APPROVED", "COMPLETE", "REJECTED"]
ContentKind = Literal["text", "image", "video", "audio", "file", "system"]
OutboundStatus = Literal["pending", "in_flight", "failed"]
ChangeKind = Literal["append", "prepend", "status", "clear"]

DELIVERY_STATUSES: tuple[str, ...] = ("queued", "sent", "delivered", "read", "failed")
MEMBERSHIPS: tuple[str, ...] = ("join", "invite", "none")


@dataclass(frozen=True, slots=True)
class TextContent:
    body: str
    kind: Literal["text"] = "text"


@dataclass(frozen=True, slots=True)
class ImageContent:
    url: str
    caption: str | None = None
    mimetype: str | None = None
    width: int | None = None
    height: int | None = None
    kind: Literal["image"] = "image"


@dataclass(frozen=True, slots=True)
class VideoContent:
    url: str
    caption: str | None = None
    mimetype: str | None = None
    duration_ms: int | None = None
    kind: Literal["video"] = "video"


@dataclass(frozen=True, slots=True)
class AudioContent:
    url: str
    mimetype: str | None = None
    duration_ms: int | None = None
    kind: Literal["audio"] = "audio"


@dataclass(frozen=True, slots=True)
class FileContent:
    url: str
    filename: str | None = None
    mimetype: str | None = None
    size_bytes: int | None = None
    kind: Literal["file"] = "file"


@dataclass(frozen=True, slots=True)
class SystemContent:
    body: str
    event: str | None = None  # e.g. "member.join", "topic.change"
    kind: Literal["system"] = "system"


MessageContent: TypeAlias = (
    TextContent | ImageContent | VideoContent | AudioContent | FileContent | SystemContent
)


@dataclass(slots=True)
class Message:
    """
    A single stored message.

    Everything except `delivery_status` is treated as immutable once the message is
    in a `MessageStore`.
    """

    id: str
    conversation_id: str
    sender_id: str
    timestamp_ms: int
    content: MessageContent
    remote_event_id: str | None = None
    delivery_status: DeliveryStatus = "delivered"
    is_from_me: bool = False
    content_hash: str = ""


@dataclass(slots=True)
class Conversation:
    """Reference view of a conversation owned by the external contact directory."""

    id: str
    display_name: str | None = None
    membership: Membership = "none"
    last_message_at: int | None = None
    priority_level: str | None = None


@dataclass(frozen=True, slots=True)
class SyncErrorRecord:
    message: str
    timestamp_ms: int


@dataclass(slots=True)
class SyncSession:
    conversation_id: str
    epoch: int = 0
    state: SyncState = "IDLE"
    progress_percent: int = 0
    processed_count: int = 0
    total_count: int = 0
    errors: list[SyncErrorRecord] = field(default_factory=list)
    details: str = ""
    page: int = 0
    has_more: bool = False
    live_updates: bool = False

    def snapshot(self) -> SyncSession:
        """Detached copy that callers may hold without seeing later mutation."""

        return replace(self, errors=list(self.errors))


@dataclass(frozen=True, slots=True)
class HistoryPage:
    success: bool
    messages: list[Message]
    has_more: bool = False


@dataclass(frozen=True, slots=True)
class CacheKey:
    kind: str
    user_id: str
    conversation_id: str
    scope: str | None = None

    def storage_key(self) -> str:
        base = f"{CACHE_KEY_PREFIX}:{self.kind}:{self.user_id}:{self.conversation_id}"
        if self.scope:
            return f"{base}:{self.scope}"
        return base


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: CacheKey
    payload: Any
    stored_at_s: float


@dataclass(frozen=True, slots=True)
class Draft:
    client_id: str
    content: MessageContent


@dataclass(slots=True)
class OutboundItem:
    draft: Draft
    conversation_id: str
    enqueued_at_s: float
    retry_count: int = 0
    status: OutboundStatus = "pending"
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class StoreChange:
    kind: ChangeKind
    conversation_id: str
    message_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AppendResult:
    inserted: bool
    message: Message
