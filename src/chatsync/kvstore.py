from __future__ import annotations

import asyncio
import hashlib
import re
from pathlib import Path
from typing import Protocol


class KeyValueStore(Protocol):
    """
    Minimal persistent string store backing the expiry cache and the outbound queue.

    Values are opaque strings (callers serialize JSON themselves).
    """

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Process-local store; contents are lost on exit. Used by tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


def _fix_filename(key: str) -> str:
    """
    Map a store key to a flat, filesystem-safe file name.

    Keys contain `:` separators and arbitrary ids; unsafe characters are replaced and
    a short digest keeps distinct keys from colliding after replacement.
    """

    safe = _UNSAFE.sub("_", key)[:120]
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    return f"{safe}-{digest}.json"


async def _read_text(path: Path) -> str:
    return await asyncio.to_thread(path.read_text, "utf-8")


async def _write_text(path: Path, data: str) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    await asyncio.to_thread(tmp.write_text, data, "utf-8")
    await asyncio.to_thread(tmp.replace, path)


async def _unlink(path: Path) -> None:
    await asyncio.to_thread(path.unlink, missing_ok=True)


class FileKeyValueStore:
    """
    One-file-per-key store under a folder.

    Writes go through a temp file and an atomic rename so a crash never leaves a
    half-written value behind. Each path has its own `asyncio.Lock`.
    """

    def __init__(self, folder: Path) -> None:
        self.folder = folder
        self._locks: dict[Path, asyncio.Lock] = {}

    @classmethod
    async def open(cls, folder: str | Path) -> FileKeyValueStore:
        p = Path(folder).expanduser()
        await asyncio.to_thread(p.mkdir, parents=True, exist_ok=True)
        return cls(p)

    def _path(self, key: str) -> Path:
        return self.folder / _fix_filename(key)

    def _lock_for(self, path: Path) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[path] = lock
        return lock

    async def get(self, key: str) -> str | None:
        path = self._path(key)
        async with self._lock_for(path):
            try:
                return await _read_text(path)
            except FileNotFoundError:
                return None

    async def set(self, key: str, value: str) -> None:
        path = self._path(key)
        async with self._lock_for(path):
            await _write_text(path, value)

    async def remove(self, key: str) -> None:
        path = self._path(key)
        async with self._lock_for(path):
            await _unlink(path)
