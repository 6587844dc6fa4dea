"""
chatsync: an asyncio-first client-side conversation sync and caching engine.

It keeps a local, deduplicated, ordered view of a conversation in step with a remote
messaging service: history sync with stale-result protection, live push events,
an offline outbound queue and an expiring analytics cache.
"""

from __future__ import annotations

from .config import ServiceConfig, SyncConfig
from .exceptions import ChatSyncError
from .service import ChatSyncService
from .types import Conversation, Message, SyncSession

__all__ = [
    "ChatSyncError",
    "ChatSyncService",
    "Conversation",
    "Message",
    "ServiceConfig",
    "SyncConfig",
    "SyncSession",
]

__version__ = "0.1.0"
