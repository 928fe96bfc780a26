"""Chat: session management and the streaming tool loop."""

from palaver.chat.coordinator import StreamCoordinator
from palaver.chat.manager import ChatSessionManager
from palaver.chat.schemas import (
    CancelToken,
    ChatEvent,
    ChatIdentity,
    PendingCall,
    StreamSession,
    StreamState,
)

__all__ = [
    "CancelToken",
    "ChatEvent",
    "ChatIdentity",
    "ChatSessionManager",
    "PendingCall",
    "StreamCoordinator",
    "StreamSession",
    "StreamState",
]
