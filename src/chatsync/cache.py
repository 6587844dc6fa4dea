from __future__ import annotations

import datetime as dt
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeAlias

from .constants import CHARTS_TTL_HOURS, PRIORITY_TTL_HOURS
from .exceptions import ValidationError
from .kvstore import KeyValueStore
from .types import CacheEntry, CacheKey
from .util import json as jsonutil

logger = logging.getLogger(__name__)

KIND_CHARTS = "charts"
KIND_PRIORITY = "priority"
KIND_DAILY_REPORT = "dailyReport"


def is_error_payload(payload: Any) -> bool:
    """True for payloads that represent a failed fetch and must never be cached."""

    if payload is None:
        return True
    if isinstance(payload, Mapping):
        if payload.get("error"):
            return True
        if payload.get("success") is False:
            return True
    return False


@dataclass(frozen=True, slots=True)
class FixedTtlPolicy:
    ttl_hours: float

    def is_valid(self, entry: CacheEntry, now_s: float) -> bool:
        return (now_s - entry.stored_at_s) < self.ttl_hours * 3600


@dataclass(frozen=True, slots=True)
class CalendarDayPolicy:
    """Valid until local midnight of the day the entry was stored."""

    def is_valid(self, entry: CacheEntry, now_s: float) -> bool:
        if is_error_payload(entry.payload):
            return False
        stored = dt.datetime.fromtimestamp(entry.stored_at_s)
        now = dt.datetime.fromtimestamp(now_s)
        return (stored.year, stored.month, stored.day) == (now.year, now.month, now.day)


CachePolicy: TypeAlias = FixedTtlPolicy | CalendarDayPolicy


def _not_error(payload: Any) -> bool:
    return not is_error_payload(payload)


def _non_empty_series(payload: Any) -> bool:
    return _not_error(payload) and bool(payload)


def _has_report(payload: Any) -> bool:
    return _not_error(payload) and isinstance(payload, Mapping) and bool(payload.get("report"))


@dataclass(frozen=True, slots=True)
class KindPolicy:
    policy: CachePolicy
    # Payloads failing this check are neither stored nor served.
    accepts: Callable[[Any], bool] = _not_error


DEFAULT_KIND_POLICIES: dict[str, KindPolicy] = {
    KIND_CHARTS: KindPolicy(FixedTtlPolicy(CHARTS_TTL_HOURS), _non_empty_series),
    KIND_PRIORITY: KindPolicy(FixedTtlPolicy(PRIORITY_TTL_HOURS)),
    KIND_DAILY_REPORT: KindPolicy(CalendarDayPolicy(), _has_report),
}


class ExpiryCache:
    """
    Keyed cache with per-kind validity over a `KeyValueStore`.

    Entries are never actively expired; validity is checked on every read. Failed reads
    behave as misses and failed writes are logged, so the cache is never a correctness
    dependency.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        policies: Mapping[str, KindPolicy] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._policies: dict[str, KindPolicy] = dict(policies or DEFAULT_KIND_POLICIES)
        self._clock = clock

    def register_kind(self, kind: str, policy: KindPolicy) -> None:
        self._policies[kind] = policy

    def policy_for(self, kind: str) -> KindPolicy:
        try:
            return self._policies[kind]
        except KeyError:
            raise ValueError(f"unknown cache data kind: {kind!r}") from None

    def is_valid(
        self,
        entry: CacheEntry,
        policy: CachePolicy | None = None,
        *,
        now_s: float | None = None,
    ) -> bool:
        kind_policy = self.policy_for(entry.key.kind)
        if not kind_policy.accepts(entry.payload):
            return False
        effective = policy or kind_policy.policy
        return effective.is_valid(entry, self._clock() if now_s is None else now_s)

    async def _read(self, key: CacheKey) -> CacheEntry | None:
        try:
            raw = await self._store.get(key.storage_key())
            if raw is None:
                return None
            d = jsonutil.loads(raw)
            if not isinstance(d, dict) or "timestamp" not in d:
                raise ValidationError("cache record is not an object with a timestamp")
            stored_at_s = float(d["timestamp"]) / 1000.0
        except Exception as e:
            logger.warning("cache read failed for %s: %s", key.storage_key(), e)
            return None
        return CacheEntry(key=key, payload=d.get("data"), stored_at_s=stored_at_s)

    async def get(
        self, kind: str, user_id: str, conversation_id: str, scope: str | None = None
    ) -> CacheEntry | None:
        """Return the stored entry if present and still valid, otherwise `None`."""

        key = CacheKey(kind=kind, user_id=user_id, conversation_id=conversation_id, scope=scope)
        entry = await self._read(key)
        if entry is None or not self.is_valid(entry):
            return None
        return entry

    async def set(
        self,
        kind: str,
        user_id: str,
        conversation_id: str,
        payload: Any,
        *,
        scope: str | None = None,
    ) -> CacheEntry | None:
        """
        Store `payload`, replacing any previous entry for the key.

        Returns `None` without writing when the payload is an error result.
        """

        key = CacheKey(kind=kind, user_id=user_id, conversation_id=conversation_id, scope=scope)
        if not self.policy_for(kind).accepts(payload):
            logger.debug("not caching rejected payload for %s", key.storage_key())
            return None

        entry = CacheEntry(key=key, payload=payload, stored_at_s=self._clock())
        record = {"data": payload, "timestamp": int(entry.stored_at_s * 1000)}
        try:
            await self._store.set(key.storage_key(), jsonutil.dumps(record))
        except Exception as e:
            logger.warning("cache write failed for %s: %s", key.storage_key(), e)
        return entry

    async def invalidate(
        self, kind: str, user_id: str, conversation_id: str, scope: str | None = None
    ) -> None:
        key = CacheKey(kind=kind, user_id=user_id, conversation_id=conversation_id, scope=scope)
        try:
            await self._store.remove(key.storage_key())
        except Exception as e:
            logger.warning("cache remove failed for %s: %s", key.storage_key(), e)

    async def get_or_fetch(
        self,
        kind: str,
        user_id: str,
        conversation_id: str,
        fetch: Callable[[], Awaitable[Any]],
        *,
        scope: str | None = None,
        force: bool = False,
    ) -> Any:
        """
        Serve a valid cached payload, or fetch, cache and return a fresh one.

        `force=True` skips the read. Fetch errors propagate to the caller and leave any
        existing entry untouched.
        """

        if not force:
            entry = await self.get(kind, user_id, conversation_id, scope)
            if entry is not None:
                return entry.payload

        payload = await fetch()
        await self.set(kind, user_id, conversation_id, payload, scope=scope)
        return payload
