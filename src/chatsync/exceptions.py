from __future__ import annotations


class ChatSyncError(Exception):
    """Base error for the chatsync library."""


class TransientNetworkError(ChatSyncError):
    """Retryable network failure (timeout, connection reset, 5xx/429)."""


class TransportError(TransientNetworkError):
    """Live channel (WebSocket) transport-level failure."""


class ValidationError(ChatSyncError):
    """A payload from the network or the local store was malformed."""


class DuplicateError(ChatSyncError):
    """
    A message with the same identity is already stored.

    `MessageStore` absorbs duplicates silently and never raises this; it exists so
    callers that want strict inserts can signal the condition.
    """


class AuthError(ChatSyncError):
    """The remote service refused our credentials (HTTP 401/403)."""


class SyncRejectedError(ChatSyncError):
    """
    A conversation sync attempt failed at the history fetch step.

    The attempt is terminal; the user recovers by retrying the sync.
    """

    def __init__(self, conversation_id: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"sync rejected for {conversation_id}{detail}")
        self.conversation_id = conversation_id
        self.cause = cause
