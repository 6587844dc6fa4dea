from __future__ import annotations

import datetime as dt
import hashlib
import math
import re
import time
from collections.abc import Mapping
from typing import Any, cast

from .exceptions import ValidationError
from .types import (
    DELIVERY_STATUSES,
    AudioContent,
    DeliveryStatus,
    Draft,
    FileContent,
    ImageContent,
    Message,
    MessageContent,
    SystemContent,
    TextContent,
    VideoContent,
)
from .util import json as jsonutil

# Wire aliases for the content discriminator. Matrix-bridged payloads use `msgtype`.
_KIND_ALIASES: dict[str, str] = {
    "text": "text",
    "m.text": "text",
    "m.notice": "text",
    "m.emote": "text",
    "image": "image",
    "m.image": "image",
    "sticker": "image",
    "m.sticker": "image",
    "video": "video",
    "m.video": "video",
    "audio": "audio",
    "voice": "audio",
    "m.audio": "audio",
    "file": "file",
    "document": "file",
    "m.file": "file",
    "system": "system",
    "notice": "system",
}

_TAG_RE = re.compile(r"<[^>]*>")


def _opt_str(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v)
    return s or None


def _opt_int(v: Any) -> int | None:
    if v is None or isinstance(v, bool):
        return None
    try:
        return int(v)
    except (TypeError, ValueError, OverflowError):
        return None


def _body_of(raw: Mapping[str, Any]) -> str | None:
    body = raw.get("body") or raw.get("text")
    if isinstance(body, str) and body:
        return body
    formatted = raw.get("formatted_body")
    if isinstance(formatted, str) and formatted:
        return _TAG_RE.sub("", formatted)
    return None


def _url_of(raw: Mapping[str, Any]) -> str | None:
    return _opt_str(raw.get("url") or raw.get("media_url") or raw.get("mediaUrl"))


def _info_of(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    info = raw.get("info")
    return info if isinstance(info, Mapping) else {}


def normalize_content(raw: Any) -> MessageContent:
    """
    Coerce a wire content payload into the tagged `MessageContent` variant.

    Accepted shapes:
    - a plain string (text message)
    - an already-normalized variant instance
    - a mapping with a `kind`, `type` or `msgtype` discriminator

    Raises `ValidationError` when the kind is unknown or required fields are missing.
    """

    if isinstance(
        raw, (TextContent, ImageContent, VideoContent, AudioContent, FileContent, SystemContent)
    ):
        return raw
    if isinstance(raw, str):
        if not raw:
            raise ValidationError("empty text content")
        return TextContent(body=raw)
    if not isinstance(raw, Mapping):
        raise ValidationError(f"unsupported content type: {type(raw).__name__}")

    tag = raw.get("kind") or raw.get("type") or raw.get("msgtype")
    if tag is None:
        # Bare `{"body": ...}` payloads are text.
        tag = "text"
    kind = _KIND_ALIASES.get(str(tag))
    if kind is None:
        raise ValidationError(f"unknown content kind: {tag!r}")

    info = _info_of(raw)
    mimetype = _opt_str(raw.get("mimetype") or info.get("mimetype"))

    if kind == "text":
        body = _body_of(raw)
        if body is None:
            raise ValidationError("text content without body")
        return TextContent(body=body)

    if kind == "system":
        body = _body_of(raw)
        if body is None:
            raise ValidationError("system content without body")
        return SystemContent(body=body, event=_opt_str(raw.get("event")))

    url = _url_of(raw)
    if url is None:
        raise ValidationError(f"{kind} content without url")

    if kind == "image":
        return ImageContent(
            url=url,
            caption=_opt_str(raw.get("caption")),
            mimetype=mimetype,
            width=_opt_int(raw.get("width", info.get("w"))),
            height=_opt_int(raw.get("height", info.get("h"))),
        )
    if kind == "video":
        return VideoContent(
            url=url,
            caption=_opt_str(raw.get("caption")),
            mimetype=mimetype,
            duration_ms=_opt_int(raw.get("duration_ms", info.get("duration"))),
        )
    if kind == "audio":
        return AudioContent(
            url=url,
            mimetype=mimetype,
            duration_ms=_opt_int(raw.get("duration_ms", info.get("duration"))),
        )
    return FileContent(
        url=url,
        filename=_opt_str(raw.get("filename") or raw.get("body")),
        mimetype=mimetype,
        size_bytes=_opt_int(raw.get("size_bytes", info.get("size"))),
    )


def content_to_dict(content: MessageContent) -> dict[str, Any]:
    if isinstance(content, TextContent):
        return {"kind": "text", "body": content.body}
    if isinstance(content, SystemContent):
        return {"kind": "system", "body": content.body, "event": content.event}
    if isinstance(content, ImageContent):
        return {
            "kind": "image",
            "url": content.url,
            "caption": content.caption,
            "mimetype": content.mimetype,
            "width": content.width,
            "height": content.height,
        }
    if isinstance(content, VideoContent):
        return {
            "kind": "video",
            "url": content.url,
            "caption": content.caption,
            "mimetype": content.mimetype,
            "duration_ms": content.duration_ms,
        }
    if isinstance(content, AudioContent):
        return {
            "kind": "audio",
            "url": content.url,
            "mimetype": content.mimetype,
            "duration_ms": content.duration_ms,
        }
    if isinstance(content, FileContent):
        return {
            "kind": "file",
            "url": content.url,
            "filename": content.filename,
            "mimetype": content.mimetype,
            "size_bytes": content.size_bytes,
        }
    raise ValidationError(f"unsupported content variant: {type(content).__name__}")


def content_preview(content: MessageContent) -> str:
    """Short human-readable line for lists and notifications."""

    if isinstance(content, (TextContent, SystemContent)):
        return content.body
    if isinstance(content, (ImageContent, VideoContent)):
        label = f"[{content.kind}]"
        return f"{label} {content.caption}" if content.caption else label
    if isinstance(content, AudioContent):
        return "[audio]"
    if isinstance(content, FileContent):
        return f"[file] {content.filename}" if content.filename else "[file]"
    raise ValidationError(f"unsupported content variant: {type(content).__name__}")


def compute_content_hash(
    *,
    conversation_id: str,
    sender_id: str,
    timestamp_ms: int,
    content: MessageContent,
    client_id: str | None = None,
) -> str:
    """
    Fingerprint used as the secondary dedup key.

    When the sender attached a client id (transaction id), the hash is derived from it
    alone so a locally queued copy and the server's echo of the same send collide even
    though their server ids and timestamps differ.
    """

    if client_id:
        material = f"txn\x00{conversation_id}\x00{client_id}"
    else:
        material = "\x00".join(
            [
                "msg",
                conversation_id,
                sender_id,
                str(int(timestamp_ms)),
                jsonutil.dumps(content_to_dict(content)),
            ]
        )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def parse_timestamp_ms(v: Any) -> int:
    """
    Accept epoch milliseconds, epoch seconds, or an ISO-8601 string.

    Numbers below 1e11 are taken as seconds (that is before 1973 in milliseconds).
    """

    if isinstance(v, bool):
        raise ValidationError("boolean is not a timestamp")
    if isinstance(v, float) and not math.isfinite(v):
        raise ValidationError(f"non-finite timestamp: {v!r}")
    if isinstance(v, (int, float)):
        return int(v if v >= 1e11 else v * 1000)
    if isinstance(v, str) and v:
        # `isdigit` alone admits superscripts and other non-ASCII digits.
        if v.isascii() and v.isdigit():
            return parse_timestamp_ms(int(v))
        try:
            parsed = dt.datetime.fromisoformat(v.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=dt.UTC)
            return int(parsed.timestamp() * 1000)
        except (ValueError, OverflowError, OSError) as e:
            raise ValidationError(f"invalid timestamp: {v!r}") from e
    raise ValidationError(f"invalid timestamp: {v!r}")


def parse_delivery_status(v: Any, *, default: DeliveryStatus = "delivered") -> DeliveryStatus:
    if v is None:
        return default
    s = str(v).lower()
    if s not in DELIVERY_STATUSES:
        raise ValidationError(f"unknown delivery status: {v!r}")
    return cast(DeliveryStatus, s)


def message_from_event(
    raw: Mapping[str, Any],
    *,
    conversation_id: str | None = None,
    my_user_id: str | None = None,
) -> Message:
    """
    Build a `Message` from a server payload (history page item or push event body).

    Field names follow the server's JSON with snake_case and camelCase accepted.
    """

    if not isinstance(raw, Mapping):
        raise ValidationError(f"message payload must be an object, got {type(raw).__name__}")

    msg_id = _opt_str(raw.get("id") or raw.get("message_id") or raw.get("messageId"))
    if msg_id is None:
        raise ValidationError("message without id")

    conv = _opt_str(
        raw.get("conversation_id") or raw.get("conversationId") or raw.get("contact_id")
    ) or conversation_id
    if conv is None:
        raise ValidationError(f"message {msg_id} has no conversation id")

    sender = _opt_str(raw.get("sender_id") or raw.get("senderId") or raw.get("sender")) or ""

    ts_raw = raw.get("timestamp", raw.get("origin_server_ts"))
    timestamp_ms = parse_timestamp_ms(ts_raw) if ts_raw is not None else int(time.time() * 1000)

    content_raw = raw.get("content")
    if content_raw is None and raw.get("msgtype"):
        content_raw = raw
    content = normalize_content(content_raw)

    from_me_raw = raw.get("is_from_me", raw.get("isFromMe"))
    if isinstance(from_me_raw, bool):
        is_from_me = from_me_raw
    else:
        is_from_me = bool(my_user_id) and sender == my_user_id

    client_id = _opt_str(raw.get("client_id") or raw.get("clientId") or raw.get("transaction_id"))
    content_hash = _opt_str(raw.get("content_hash") or raw.get("contentHash"))
    if content_hash is None:
        content_hash = compute_content_hash(
            conversation_id=conv,
            sender_id=sender,
            timestamp_ms=timestamp_ms,
            content=content,
            client_id=client_id,
        )

    remote_event_id = _opt_str(
        raw.get("remote_event_id") or raw.get("remoteEventId") or raw.get("event_id")
    )
    if remote_event_id is None and raw.get("id") and raw.get("message_id"):
        # Bridged payloads carry both a row id and the upstream message id.
        remote_event_id = str(raw["message_id"])

    return Message(
        id=msg_id,
        conversation_id=conv,
        sender_id=sender,
        timestamp_ms=timestamp_ms,
        content=content,
        remote_event_id=remote_event_id,
        delivery_status=parse_delivery_status(raw.get("delivery_status", raw.get("status"))),
        is_from_me=is_from_me,
        content_hash=content_hash,
    )


def local_message_for_draft(
    draft: Draft, *, conversation_id: str, sender_id: str, timestamp_ms: int
) -> Message:
    """Optimistic local copy of an outgoing draft, keyed by its client id."""

    return Message(
        id=draft.client_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        timestamp_ms=timestamp_ms,
        content=draft.content,
        remote_event_id=None,
        delivery_status="queued",
        is_from_me=True,
        content_hash=compute_content_hash(
            conversation_id=conversation_id,
            sender_id=sender_id,
            timestamp_ms=timestamp_ms,
            content=draft.content,
            client_id=draft.client_id,
        ),
    )


def draft_to_dict(draft: Draft) -> dict[str, Any]:
    return {"client_id": draft.client_id, "content": content_to_dict(draft.content)}


def draft_from_dict(d: Mapping[str, Any]) -> Draft:
    client_id = _opt_str(d.get("client_id"))
    if client_id is None:
        raise ValidationError("draft without client_id")
    return Draft(client_id=client_id, content=normalize_content(d.get("content")))
