from __future__ import annotations

import asyncio
import http.client

import pytest

from chatsync import ChatSyncService, Conversation, ServiceConfig, SyncConfig
from chatsync.cache import KIND_PRIORITY
from chatsync.exceptions import AuthError, TransientNetworkError, ValidationError
from chatsync.types import HistoryPage, Message, TextContent


class _IdleTransport:
    """Connects fine and then never delivers a frame."""

    def __init__(self) -> None:
        self._open = False
        self._never: asyncio.Event = asyncio.Event()

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self) -> None:
        self._open = True

    async def close(self) -> None:
        self._open = False

    async def send(self, data: str) -> None:
        pass

    async def recv(self) -> str:
        await self._never.wait()
        return ""


def _service(api, **kw) -> ChatSyncService:
    config = SyncConfig(user_id="me", retry_cooldown_s=0, mark_read_window_s=0.01, **kw)
    return ChatSyncService(config=config, api=api, transport=_IdleTransport())


@pytest.mark.asyncio
async def test_selecting_another_conversation_discards_the_pending_one(api) -> None:
    def page(conv: str) -> HistoryPage:
        msg = Message(
            id=f"{conv}-1",
            conversation_id=conv,
            sender_id="u2",
            timestamp_ms=1,
            content=TextContent("x"),
        )
        return HistoryPage(success=True, messages=[msg])

    service = _service(api)
    api.pages[("a", 0)] = page("a")
    api.pages[("b", 0)] = page("b")
    api.gates["a"] = asyncio.Event()

    task_a = asyncio.create_task(service.select_conversation(Conversation("a", membership="join")))
    await api.started("a").wait()
    session_b = await service.select_conversation(Conversation("b", membership="join"))
    api.gates["a"].set()
    await task_a

    assert service.store.count("a") == 0
    assert session_b.state == "COMPLETE"
    assert service.store.count("b") == 1
    await service.close()


@pytest.mark.asyncio
async def test_send_message_queues_offline_and_flushes_on_connect(api) -> None:
    service = _service(api)
    failed = []
    service.on("outbound.failed", failed.append)

    client_id = await service.send_message("c1", "hello")
    assert [i.draft.client_id for i in service.pending_outbound()] == [client_id]
    assert service.get_messages("c1")[0].delivery_status == "queued"

    assert await service.start() is True
    await service.outbound.join()

    assert [(cid, d.content) for cid, d in api.sent] == [("c1", TextContent(body="hello"))]
    assert service.pending_outbound() == []
    assert service.get_messages("c1")[0].delivery_status == "sent"
    assert failed == []
    await service.close()


@pytest.mark.asyncio
async def test_send_message_never_raises_for_network_errors(api) -> None:
    service = _service(api)
    await service.start()
    api.send_outcomes = [TransientNetworkError("down")] * 3

    client_id = await service.send_message("c1", {"kind": "text", "body": "hi"})
    await service.outbound.join()
    assert service.store.find_message("c1", client_id).delivery_status == "failed"

    assert await service.cancel_outbound(client_id) is True
    assert service.pending_outbound() == []
    await service.close()


@pytest.mark.asyncio
async def test_send_message_returns_client_id_even_when_the_api_misbehaves(api) -> None:
    service = _service(api)
    await service.start()
    api.send_outcomes = [http.client.IncompleteRead(b"")]

    client_id = await service.send_message("c1", "hi")
    assert isinstance(client_id, str) and client_id
    (item,) = service.pending_outbound("c1")
    assert item.draft.client_id == client_id
    assert item.status == "pending"

    await service.outbound.join()
    assert service.pending_outbound() == []
    assert service.store.find_message("c1", client_id).delivery_status == "sent"
    await service.close()


@pytest.mark.asyncio
async def test_send_message_rejects_bad_content(api) -> None:
    service = _service(api)
    with pytest.raises(ValidationError):
        await service.send_message("c1", {"kind": "image"})
    await service.close()


@pytest.mark.asyncio
async def test_mark_read_is_debounced_into_one_request(api) -> None:
    service = _service(api)
    service.mark_read("c1", ["m1"])
    service.mark_read("c1", ["m2", "m1"])
    await asyncio.sleep(0.1)
    assert api.read_calls == [("c1", ["m1", "m2"])]
    await service.close()


@pytest.mark.asyncio
async def test_connection_updates_are_forwarded(api) -> None:
    service = _service(api)
    seen = []
    service.on("connection.update", lambda u: seen.append(u.current))
    await service.start()
    assert seen == ["connecting", "connected"]
    assert service.connection_health() == "healthy"
    await service.close()


@pytest.mark.asyncio
async def test_priority_overview_is_cached_per_period(api) -> None:
    service = _service(api)
    api.analytics["priority:week"] = {"level": "high"}

    assert await service.priority_overview("c1", "week") == {"level": "high"}
    assert await service.priority_overview("c1", "week") == {"level": "high"}
    assert api.analytics_calls == [("priority:week", "c1")]
    assert await service.get_cached(KIND_PRIORITY, "me", "c1", "week") == {"level": "high"}

    await service.priority_overview("c1", "week", force=True)
    assert len(api.analytics_calls) == 2

    with pytest.raises(ValidationError):
        await service.priority_overview("c1", "decade")
    await service.close()


@pytest.mark.asyncio
async def test_error_payloads_are_returned_but_not_cached(api) -> None:
    service = _service(api)
    api.analytics["charts"] = []
    api.analytics["daily"] = {"error": "not ready"}

    assert await service.chart_series("c1") == []
    assert await service.chart_series("c1") == []
    assert await service.daily_report("c1") == {"error": "not ready"}
    assert len(api.analytics_calls) == 3
    await service.close()


@pytest.mark.asyncio
async def test_auth_errors_are_escalated_and_raised(api) -> None:
    service = _service(api)
    auth_errors = []
    service.on("auth.error", auth_errors.append)
    api.analytics["daily"] = AuthError("401")

    with pytest.raises(AuthError):
        await service.daily_report("c1")
    assert len(auth_errors) == 1
    await service.close()


@pytest.mark.asyncio
async def test_create_restores_queue_from_storage_dir(tmp_path, api) -> None:
    config = ServiceConfig(sync=SyncConfig(user_id="me"), storage_dir=tmp_path)
    first = await ChatSyncService.create(config, api=api, transport=_IdleTransport())
    await first.send_message("c1", "queued while offline")
    await first.close()

    second = await ChatSyncService.create(config, api=api, transport=_IdleTransport())
    assert len(second.pending_outbound("c1")) == 1
    await second.start()
    await second.outbound.join()
    assert len(api.sent) == 1
    assert second.pending_outbound() == []
    await second.close()
