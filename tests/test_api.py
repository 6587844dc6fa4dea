from __future__ import annotations

import http.client
import io
import json
import time
import urllib.error
import urllib.request

import pytest

from chatsync.api import HttpRemoteApi, parse_messages
from chatsync.config import SyncConfig
from chatsync.exceptions import (
    AuthError,
    ChatSyncError,
    TransientNetworkError,
    ValidationError,
)
from chatsync.types import Draft, TextContent


class _Response:
    def __init__(self, body: bytes | Exception) -> None:
        self._body = body

    def __enter__(self) -> _Response:
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def read(self) -> bytes:
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class _Server:
    """Stands in for `urlopen`: records requests and replays scripted replies."""

    def __init__(self) -> None:
        self.replies: list[object] = []
        self.requests: list[urllib.request.Request] = []

    def __call__(self, req: urllib.request.Request, timeout: float | None = None) -> _Response:
        self.requests.append(req)
        reply = self.replies.pop(0)
        if isinstance(reply, urllib.error.URLError):
            raise reply
        if isinstance(reply, (bytes, Exception)):
            return _Response(reply)
        return _Response(json.dumps(reply).encode("utf-8"))


def _http_error(code: int) -> urllib.error.HTTPError:
    body = io.BytesIO(b'{"error":"nope"}')
    return urllib.error.HTTPError(
        "http://api.test/x", code, "status", None, body  # type: ignore[arg-type]
    )


@pytest.fixture
def server(monkeypatch) -> _Server:
    s = _Server()
    monkeypatch.setattr(urllib.request, "urlopen", s)
    return s


def _api(**cfg) -> HttpRemoteApi:
    return HttpRemoteApi(
        SyncConfig(api_base_url="http://api.test/", user_id="me", auth_token="tok", **cfg)
    )


_ITEM = {"id": "m1", "sender_id": "u2", "timestamp": 1_700_000_000, "content": "hi"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("code", "error"),
    [
        (401, AuthError),
        (403, AuthError),
        (429, TransientNetworkError),
        (500, TransientNetworkError),
        (503, TransientNetworkError),
    ],
)
async def test_http_status_maps_to_error_kind(server, code, error) -> None:
    server.replies = [_http_error(code)]
    with pytest.raises(error):
        await _api().fetch_history("c1", 0, 50)


@pytest.mark.asyncio
async def test_other_client_errors_are_not_retryable(server) -> None:
    server.replies = [_http_error(404)]
    with pytest.raises(ChatSyncError) as exc_info:
        await _api().fetch_history("c1", 0, 50)
    assert not isinstance(exc_info.value, (TransientNetworkError, AuthError))


@pytest.mark.asyncio
async def test_connection_level_failures_are_transient(server) -> None:
    server.replies = [
        urllib.error.URLError("refused"),
        http.client.IncompleteRead(b"par"),
        ConnectionResetError("reset"),
    ]
    api = _api()
    for _ in range(3):
        with pytest.raises(TransientNetworkError):
            await api.fetch_history("c1", 0, 50)


@pytest.mark.asyncio
async def test_invalid_json_body_is_a_validation_error(server) -> None:
    server.replies = [b"<html>oops</html>"]
    with pytest.raises(ValidationError):
        await _api().fetch_history("c1", 0, 50)


@pytest.mark.asyncio
async def test_history_request_and_page_parsing(server) -> None:
    server.replies = [{"success": True, "data": [_ITEM], "hasMore": True}]

    page = await _api().fetch_history("room/1", 2, 25)

    req = server.requests[0]
    assert req.get_method() == "GET"
    assert req.full_url == "http://api.test/api/v1/conversations/room%2F1/messages?page=2&limit=25"
    assert req.get_header("Authorization") == "Bearer tok"
    assert page.success is True
    assert page.has_more is True
    assert [m.id for m in page.messages] == ["m1"]
    assert page.messages[0].conversation_id == "room/1"


@pytest.mark.asyncio
async def test_history_accepts_snake_case_has_more_and_reports_failure(server) -> None:
    server.replies = [
        {"success": True, "data": [], "has_more": True},
        {"success": False, "error": "denied"},
    ]
    api = _api()
    assert (await api.fetch_history("c1", 0, 50)).has_more is True
    page = await api.fetch_history("c1", 0, 50)
    assert page.success is False
    assert page.messages == []


@pytest.mark.asyncio
async def test_unsuccessful_envelope_raises(server) -> None:
    server.replies = [{"success": False, "error": "later"}]
    with pytest.raises(TransientNetworkError):
        await _api().fetch_new_messages("c1", "$e1")


@pytest.mark.asyncio
async def test_send_fills_in_client_id_for_echo_matching(server) -> None:
    server.replies = [
        {"success": True, "message": {**_ITEM, "id": "srv-1", "sender_id": "me"}},
    ]
    draft = Draft(client_id="tx1", content=TextContent(body="hi"))

    msg = await _api().send_message("c1", draft)

    sent = json.loads(server.requests[0].data)
    assert sent["client_id"] == "tx1"
    assert msg.id == "srv-1"
    assert msg.is_from_me is True
    local_hash = parse_messages(
        [{**_ITEM, "id": "other", "client_id": "tx1"}], conversation_id="c1", my_user_id="me"
    )[0].content_hash
    assert msg.content_hash == local_hash


@pytest.mark.asyncio
async def test_slow_server_is_bounded_by_request_timeout(monkeypatch) -> None:
    def slow(req, timeout=None):
        time.sleep(0.3)
        return _Response(b"{}")

    monkeypatch.setattr(urllib.request, "urlopen", slow)
    with pytest.raises(TransientNetworkError, match="timed out"):
        await _api(request_timeout_s=0.05).fetch_history("c1", 0, 50)


def test_parse_messages_drops_only_malformed_items() -> None:
    items = [
        {**_ITEM, "id": "a", "timestamp": float("nan")},
        {**_ITEM, "id": "b", "timestamp": float("inf")},
        {**_ITEM, "id": "c", "timestamp": "\u00b2"},
        {**_ITEM, "id": "d"},
    ]
    assert [m.id for m in parse_messages(items, conversation_id="c1", my_user_id="me")] == ["d"]

    with pytest.raises(ValidationError):
        parse_messages({"not": "a list"}, conversation_id="c1", my_user_id="me")
