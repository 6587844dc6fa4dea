from __future__ import annotations

import http.client

import pytest

from chatsync.connection.monitor import ConnectionMonitor
from chatsync.exceptions import AuthError, ChatSyncError, TransientNetworkError
from chatsync.kvstore import InMemoryKeyValueStore
from chatsync.outbound import OutboundQueue
from chatsync.store import MessageStore
from chatsync.types import Draft, TextContent


def _draft(client_id: str, body: str = "hi") -> Draft:
    return Draft(client_id=client_id, content=TextContent(body=body))


def _queue(api, *, kv=None, store=None, monitor=None) -> OutboundQueue:
    return OutboundQueue(
        monitor=monitor or ConnectionMonitor(),
        store=store or MessageStore(),
        api=api,
        kv=kv or InMemoryKeyValueStore(),
        my_user_id="me",
        retry_cooldown_s=0,
    )


@pytest.mark.asyncio
async def test_offline_draft_is_sent_exactly_once_on_reconnect(api) -> None:
    monitor = ConnectionMonitor()
    store = MessageStore()
    q = _queue(api, store=store, monitor=monitor)

    item = await q.submit("c1", _draft("tx1"))
    assert item is not None and item.status == "pending"
    assert api.sent == []
    assert store.find_message("c1", "tx1").delivery_status == "queued"

    await monitor.set_state("connecting")
    await monitor.set_state("connected")
    await q.join()
    assert [d.client_id for _, d in api.sent] == ["tx1"]

    await monitor.set_state("disconnected")
    await monitor.set_state("connected")
    await q.join()
    assert len(api.sent) == 1
    assert q.pending() == []
    assert store.find_message("c1", "tx1").delivery_status == "sent"
    assert store.count("c1") == 1
    await q.close()


@pytest.mark.asyncio
async def test_direct_send_when_connected(api) -> None:
    monitor = ConnectionMonitor()
    kv = InMemoryKeyValueStore()
    store = MessageStore()
    await monitor.set_state("connected")
    q = _queue(api, kv=kv, store=store, monitor=monitor)

    assert await q.submit("c1", _draft("tx1")) is None
    assert len(api.sent) == 1
    assert q.pending() == []
    assert kv.keys() == []
    assert store.find_message("c1", "srv-1").id == "tx1"
    await q.close()


@pytest.mark.asyncio
async def test_concurrent_drains_send_each_item_once_in_order(api) -> None:
    monitor = ConnectionMonitor()
    q = _queue(api, monitor=monitor)
    for i in range(3):
        await q.enqueue("c1", _draft(f"tx{i}"))
    await q.enqueue("c2", _draft("other"))

    await monitor.set_state("connected")
    await q.drain()
    await q.join()

    c1 = [d.client_id for cid, d in api.sent if cid == "c1"]
    assert c1 == ["tx0", "tx1", "tx2"]
    assert len(api.sent) == 4
    await q.close()


@pytest.mark.asyncio
async def test_transient_failures_are_retried(api) -> None:
    monitor = ConnectionMonitor()
    await monitor.set_state("connected")
    q = _queue(api, monitor=monitor)
    api.send_outcomes = [TransientNetworkError("reset"), TransientNetworkError("timeout"), None]

    item = await q.submit("c1", _draft("tx1"))
    assert item is not None and item.retry_count == 1
    await q.join()

    assert len(api.sent) == 3
    assert q.pending() == []
    await q.close()


@pytest.mark.asyncio
async def test_item_fails_after_max_retries_and_can_be_retried(api) -> None:
    monitor = ConnectionMonitor()
    store = MessageStore()
    await monitor.set_state("connected")
    q = _queue(api, monitor=monitor, store=store)
    failed = []
    q.events.on("outbound.failed", failed.append)
    api.send_outcomes = [TransientNetworkError("x")] * 3

    await q.submit("c1", _draft("tx1"))
    await q.join()

    assert len(api.sent) == 3
    assert [i.draft.client_id for i in failed] == ["tx1"]
    (item,) = q.pending("c1")
    assert item.status == "failed"
    assert store.find_message("c1", "tx1").delivery_status == "failed"

    assert await q.retry("tx1") is True
    await q.join()
    assert len(api.sent) == 4
    assert q.pending() == []
    assert store.find_message("c1", "tx1").delivery_status == "sent"
    await q.close()


@pytest.mark.asyncio
async def test_unmapped_send_error_is_retried_then_failed_not_left_in_flight(api) -> None:
    monitor = ConnectionMonitor()
    store = MessageStore()
    await monitor.set_state("connected")
    q = _queue(api, monitor=monitor, store=store)
    failed = []
    q.events.on("outbound.failed", failed.append)
    api.send_outcomes = [http.client.IncompleteRead(b""), RuntimeError("api bug")] * 2

    item = await q.submit("c1", _draft("tx1"))
    assert item is not None and item.status == "pending"
    await q.join()

    assert len(api.sent) == 3
    assert item.status == "failed"
    assert [i.draft.client_id for i in failed] == ["tx1"]
    assert store.find_message("c1", "tx1").delivery_status == "failed"

    api.send_outcomes = [http.client.IncompleteRead(b"")]
    assert await q.retry("tx1") is True
    await q.join()
    assert q.pending() == []
    assert store.find_message("c1", "tx1").delivery_status == "sent"
    await q.close()


@pytest.mark.asyncio
async def test_non_transient_error_fails_without_retry(api) -> None:
    monitor = ConnectionMonitor()
    await monitor.set_state("connected")
    q = _queue(api, monitor=monitor)
    failed = []
    q.events.on("outbound.failed", failed.append)
    api.send_outcomes = [ChatSyncError("http 400")]

    await q.submit("c1", _draft("tx1"))
    await q.join()

    assert len(api.sent) == 1
    assert len(failed) == 1
    assert failed[0].last_error == "http 400"
    await q.close()


@pytest.mark.asyncio
async def test_auth_error_pauses_and_escalates(api) -> None:
    monitor = ConnectionMonitor()
    await monitor.set_state("connected")
    q = _queue(api, monitor=monitor)
    auth_errors = []
    q.events.on("auth.error", auth_errors.append)
    api.send_outcomes = [AuthError("401")]

    await q.submit("c1", _draft("tx1"))
    await q.join()

    assert len(api.sent) == 1
    assert len(auth_errors) == 1
    (item,) = q.pending()
    assert item.status == "pending"
    assert item.retry_count == 0
    await q.close()


@pytest.mark.asyncio
async def test_cancel_removes_item_before_it_is_sent(api) -> None:
    monitor = ConnectionMonitor()
    store = MessageStore()
    q = _queue(api, monitor=monitor, store=store)

    await q.submit("c1", _draft("tx1"))
    assert await q.cancel("tx1") is True
    assert await q.cancel("tx1") is False
    assert store.find_message("c1", "tx1").delivery_status == "failed"

    await monitor.set_state("connected")
    await q.join()
    assert api.sent == []
    await q.close()


@pytest.mark.asyncio
async def test_pending_items_survive_restart(api) -> None:
    kv = InMemoryKeyValueStore()
    q1 = _queue(api, kv=kv)
    await q1.submit("c1", _draft("tx1", "first"))
    await q1.submit("c2", _draft("tx2", "second"))
    await q1.close()

    monitor = ConnectionMonitor()
    store = MessageStore()
    q2 = _queue(api, kv=kv, monitor=monitor, store=store)
    assert await q2.restore() == 2
    assert [i.draft.client_id for i in q2.pending()] == ["tx1", "tx2"]
    assert q2.pending("c2")[0].draft.content == TextContent(body="second")

    await monitor.set_state("connected")
    await q2.join()
    assert sorted(d.client_id for _, d in api.sent) == ["tx1", "tx2"]
    assert kv.keys() == []
    assert store.count("c1") == 1
    await q2.close()


@pytest.mark.asyncio
async def test_unreadable_persisted_queue_is_discarded(api) -> None:
    q = _queue(api, kv=InMemoryKeyValueStore({"outbound_queue": "not json"}))
    assert await q.restore() == 0
    assert q.pending() == []
