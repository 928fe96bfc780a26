"""Conversation: canonical turn log shared by every model backend."""

from palaver.conversation.schemas import (
    ChatSummary,
    Conversation,
    Segment,
    TextSegment,
    ToolCallRequest,
    ToolCallSegment,
    ToolResultSegment,
    ToolSchema,
    Turn,
    TurnRole,
    derive_title,
)
from palaver.conversation.store import ConversationStore

__all__ = [
    "ChatSummary",
    "Conversation",
    "ConversationStore",
    "Segment",
    "TextSegment",
    "ToolCallRequest",
    "ToolCallSegment",
    "ToolResultSegment",
    "ToolSchema",
    "Turn",
    "TurnRole",
    "derive_title",
]
