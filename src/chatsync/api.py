from __future__ import annotations

import asyncio
import contextlib
import http.client
import logging
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Mapping
from typing import Any, Protocol

from .config import SyncConfig
from .exceptions import AuthError, ChatSyncError, TransientNetworkError, ValidationError
from .normalize import content_to_dict, message_from_event
from .types import Draft, HistoryPage, Message
from .util import json as jsonutil
from .util.asyncio import with_timeout

logger = logging.getLogger(__name__)


class RemoteApi(Protocol):
    """Request/response side of the remote service."""

    async def fetch_history(
        self, conversation_id: str, page: int, page_size: int
    ) -> HistoryPage: ...

    async def fetch_new_messages(
        self, conversation_id: str, last_event_id: str
    ) -> list[Message]: ...

    async def send_message(self, conversation_id: str, draft: Draft) -> Message: ...

    async def register_live(self, conversation_id: str) -> None: ...

    async def mark_read(self, conversation_id: str, message_ids: list[str]) -> None: ...

    async def fetch_priority_overview(self, conversation_id: str, time_period: str) -> Any: ...

    async def fetch_daily_report(self, conversation_id: str) -> Any: ...

    async def fetch_chart_series(self, conversation_id: str) -> Any: ...


def parse_messages(
    items: Any, *, conversation_id: str, my_user_id: str | None
) -> list[Message]:
    """Parse a list of message payloads, dropping (and logging) malformed entries."""

    if not isinstance(items, list):
        raise ValidationError(f"expected a list of messages, got {type(items).__name__}")
    out: list[Message] = []
    for item in items:
        try:
            out.append(
                message_from_event(item, conversation_id=conversation_id, my_user_id=my_user_id)
            )
        except ValidationError as e:
            logger.warning("dropping malformed message in %s: %s", conversation_id, e)
    return out


def _envelope_data(body: Any, *, what: str) -> Any:
    if not isinstance(body, Mapping):
        raise ValidationError(f"{what}: response is not an object")
    if body.get("success") is False:
        err = body.get("error") or body.get("message") or "unknown error"
        raise TransientNetworkError(f"{what}: server reported failure: {err}")
    return body.get("data")


class HttpRemoteApi:
    """
    JSON-over-HTTP implementation of `RemoteApi`.

    Blocking `urllib` calls run in a worker thread. Each call is bounded twice: by the
    socket timeout and by `asyncio.wait_for`, so a stalled server cannot hang a sync.
    """

    def __init__(self, config: SyncConfig) -> None:
        self.config = config

    def _url(self, path: str, query: Mapping[str, Any] | None = None) -> str:
        base = self.config.api_base_url.rstrip("/")
        url = f"{base}/{path.lstrip('/')}"
        if query:
            url += "?" + urllib.parse.urlencode({k: v for k, v in query.items() if v is not None})
        return url

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "chatsync/0.1",
        }
        if self.config.auth_token:
            headers["Authorization"] = f"Bearer {self.config.auth_token}"
        headers.update(self.config.headers)
        return headers

    def _http_json(self, method: str, url: str, body: Any | None) -> Any:
        data = jsonutil.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(url, data=data, headers=self._headers(), method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.config.request_timeout_s) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            detail = b""
            with contextlib.suppress(Exception):
                detail = e.read()
            msg = f"{method} {url} -> http {e.code}: {detail[:200]!r}"
            if e.code in (401, 403):
                raise AuthError(msg) from e
            if e.code == 429 or e.code >= 500:
                raise TransientNetworkError(msg) from e
            raise ChatSyncError(msg) from e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            raise TransientNetworkError(f"{method} {url} failed: {e!r}") from e
        except ValueError as e:
            raise ValidationError(f"{method} {url}: bad request: {e}") from e

        if not raw:
            return None
        try:
            return jsonutil.loads(raw)
        except ValueError as e:
            raise ValidationError(f"{method} {url}: invalid JSON response") from e

    async def _request(
        self,
        method: str,
        path: str,
        *,
        query: Mapping[str, Any] | None = None,
        body: Any | None = None,
    ) -> Any:
        url = self._url(path, query)
        return await with_timeout(
            self.config.request_timeout_s,
            asyncio.to_thread(self._http_json, method, url, body),
            what=f"{method} {path}",
        )

    @staticmethod
    def _conv_path(conversation_id: str, suffix: str = "") -> str:
        cid = urllib.parse.quote(conversation_id, safe="")
        return f"/api/v1/conversations/{cid}{suffix}"

    async def fetch_history(self, conversation_id: str, page: int, page_size: int) -> HistoryPage:
        body = await self._request(
            "GET",
            self._conv_path(conversation_id, "/messages"),
            query={"page": page, "limit": page_size},
        )
        if not isinstance(body, Mapping):
            raise ValidationError("history: response is not an object")
        success = bool(body.get("success", True))
        if not success:
            return HistoryPage(success=False, messages=[], has_more=False)
        messages = parse_messages(
            body.get("data") or [], conversation_id=conversation_id, my_user_id=self.config.user_id
        )
        has_more = bool(body.get("hasMore", body.get("has_more", False)))
        return HistoryPage(success=True, messages=messages, has_more=has_more)

    async def fetch_new_messages(self, conversation_id: str, last_event_id: str) -> list[Message]:
        body = await self._request(
            "GET",
            self._conv_path(conversation_id, "/messages/new"),
            query={"lastEventId": last_event_id},
        )
        data = _envelope_data(body, what="new messages")
        return parse_messages(
            data or [], conversation_id=conversation_id, my_user_id=self.config.user_id
        )

    async def send_message(self, conversation_id: str, draft: Draft) -> Message:
        body = await self._request(
            "POST",
            self._conv_path(conversation_id, "/messages"),
            body={"client_id": draft.client_id, "content": content_to_dict(draft.content)},
        )
        if not isinstance(body, Mapping):
            raise ValidationError("send: response is not an object")
        if body.get("success") is False:
            err = body.get("error") or "unknown error"
            raise TransientNetworkError(f"send rejected: {err}")
        payload = body.get("message") or body.get("data")
        if not isinstance(payload, Mapping):
            raise ValidationError("send: response has no message")
        if not (payload.get("client_id") or payload.get("clientId")):
            payload = {**payload, "client_id": draft.client_id}
        return message_from_event(
            payload, conversation_id=conversation_id, my_user_id=self.config.user_id
        )

    async def register_live(self, conversation_id: str) -> None:
        await self._request("POST", self._conv_path(conversation_id, "/listen"), body={})

    async def mark_read(self, conversation_id: str, message_ids: list[str]) -> None:
        await self._request(
            "POST", self._conv_path(conversation_id, "/read"), body={"messageIds": message_ids}
        )

    async def fetch_priority_overview(self, conversation_id: str, time_period: str) -> Any:
        cid = urllib.parse.quote(conversation_id, safe="")
        body = await self._request(
            "GET",
            f"/api/v1/priority/contact/{cid}/overview",
            query={"timePeriod": time_period},
        )
        return _envelope_data(body, what="priority overview")

    async def fetch_daily_report(self, conversation_id: str) -> Any:
        cid = urllib.parse.quote(conversation_id, safe="")
        # The report endpoint answers with the report object itself (no envelope).
        return await self._request("GET", f"/api/v1/priority/daily-report-analysis/{cid}")

    async def fetch_chart_series(self, conversation_id: str) -> Any:
        body = await self._request("GET", self._conv_path(conversation_id, "/messages/stats"))
        return _envelope_data(body, what="chart series")
