from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .constants import (
    DEFAULT_API_BASE_URL,
    DEFAULT_LIVE_URL,
    MARK_READ_WINDOW_S,
    MAX_RETRIES,
    PAGE_SIZE,
    REQUEST_TIMEOUT_S,
    RETRY_COOLDOWN_S,
)


@dataclass(slots=True)
class SyncConfig:
    api_base_url: str = DEFAULT_API_BASE_URL
    live_url: str = DEFAULT_LIVE_URL
    user_id: str = ""
    auth_token: str | None = None

    page_size: int = PAGE_SIZE
    request_timeout_s: float = REQUEST_TIMEOUT_S
    connect_timeout_s: float = 20.0
    keep_alive_interval_s: float = 25.0
    # Delay before the live channel reconnects after losing its socket; `None` disables it.
    reconnect_delay_s: float | None = 2.0

    max_retries: int = MAX_RETRIES
    retry_cooldown_s: float = RETRY_COOLDOWN_S
    mark_read_window_s: float = MARK_READ_WINDOW_S

    headers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ServiceConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    # Folder for the file-backed key-value store; `None` keeps everything in memory.
    storage_dir: Path | None = None
