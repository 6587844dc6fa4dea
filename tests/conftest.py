from __future__ import annotations

import asyncio
from typing import Any

import pytest

from chatsync.normalize import compute_content_hash
from chatsync.types import Draft, HistoryPage, Message


class FakeApi:
    """Scriptable in-process `RemoteApi`."""

    def __init__(self) -> None:
        self.pages: dict[tuple[str, int], HistoryPage] = {}
        self.history_error: Exception | None = None
        self.register_error: Exception | None = None
        # conversation id -> event that must be set before its history fetch returns
        self.gates: dict[str, asyncio.Event] = {}
        self.fetch_started: dict[str, asyncio.Event] = {}

        self.send_outcomes: list[Exception | None] = []
        self.sent: list[tuple[str, Draft]] = []
        self.registered: list[str] = []
        self.history_calls: list[tuple[str, int, int]] = []
        self.read_calls: list[tuple[str, list[str]]] = []
        self.new_messages: list[Message] = []
        self.new_message_calls: list[tuple[str, str]] = []

        self.analytics: dict[str, Any] = {}
        self.analytics_calls: list[tuple[str, str]] = []

    def started(self, conversation_id: str) -> asyncio.Event:
        return self.fetch_started.setdefault(conversation_id, asyncio.Event())

    async def fetch_history(self, conversation_id: str, page: int, page_size: int) -> HistoryPage:
        self.history_calls.append((conversation_id, page, page_size))
        self.started(conversation_id).set()
        gate = self.gates.get(conversation_id)
        if gate is not None:
            await gate.wait()
        if self.history_error is not None:
            raise self.history_error
        return self.pages.get(
            (conversation_id, page), HistoryPage(success=True, messages=[], has_more=False)
        )

    async def fetch_new_messages(self, conversation_id: str, last_event_id: str) -> list[Message]:
        self.new_message_calls.append((conversation_id, last_event_id))
        return list(self.new_messages)

    async def send_message(self, conversation_id: str, draft: Draft) -> Message:
        self.sent.append((conversation_id, draft))
        if self.send_outcomes:
            outcome = self.send_outcomes.pop(0)
            if outcome is not None:
                raise outcome
        n = len(self.sent)
        return Message(
            id=f"srv-{n}",
            conversation_id=conversation_id,
            sender_id="me",
            timestamp_ms=2_000_000 + n,
            content=draft.content,
            remote_event_id=f"$evt-{n}",
            delivery_status="sent",
            is_from_me=True,
            content_hash=compute_content_hash(
                conversation_id=conversation_id,
                sender_id="me",
                timestamp_ms=0,
                content=draft.content,
                client_id=draft.client_id,
            ),
        )

    async def register_live(self, conversation_id: str) -> None:
        self.registered.append(conversation_id)
        if self.register_error is not None:
            raise self.register_error

    async def mark_read(self, conversation_id: str, message_ids: list[str]) -> None:
        self.read_calls.append((conversation_id, list(message_ids)))

    async def _analytics(self, name: str, conversation_id: str) -> Any:
        self.analytics_calls.append((name, conversation_id))
        value = self.analytics.get(name)
        if isinstance(value, Exception):
            raise value
        return value

    async def fetch_priority_overview(self, conversation_id: str, time_period: str) -> Any:
        return await self._analytics(f"priority:{time_period}", conversation_id)

    async def fetch_daily_report(self, conversation_id: str) -> Any:
        return await self._analytics("daily", conversation_id)

    async def fetch_chart_series(self, conversation_id: str) -> Any:
        return await self._analytics("charts", conversation_id)


@pytest.fixture
def api() -> FakeApi:
    return FakeApi()
