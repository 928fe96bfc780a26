"""Pydantic models for the canonical conversation representation.

Every provider adapter translates to and from these; nothing in here knows
about any wire format.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from palaver.utils import utcnow


class TurnRole(StrEnum):
    USER = "user"
    MODEL = "model"
    TOOL_RESULT = "tool_result"


# --- Segments ---


class TextSegment(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallSegment(BaseModel):
    """A tool invocation requested by the model."""

    type: Literal["tool_call"] = "tool_call"
    call_id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResultSegment(BaseModel):
    """The outcome of executing one tool call, keyed by the call's id."""

    type: Literal["tool_result"] = "tool_result"
    call_id: str
    name: str
    result: dict[str, Any] = Field(default_factory=dict)


Segment = Annotated[
    TextSegment | ToolCallSegment | ToolResultSegment,
    Field(discriminator="type"),
]


# --- Turns ---


class Turn(BaseModel):
    """One entry in the conversation log.

    ``id`` is empty until ConversationStore.append assigns one.
    ``stopped`` marks a model turn cut short by user cancellation.
    """

    id: str = ""
    role: TurnRole
    segments: list[Segment] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    stopped: bool = False

    @property
    def text(self) -> str:
        return "".join(s.text for s in self.segments if isinstance(s, TextSegment))

    @property
    def tool_calls(self) -> list[ToolCallSegment]:
        return [s for s in self.segments if isinstance(s, ToolCallSegment)]

    @property
    def tool_results(self) -> list[ToolResultSegment]:
        return [s for s in self.segments if isinstance(s, ToolResultSegment)]

    @classmethod
    def for_user(cls, text: str) -> Turn:
        return cls(role=TurnRole.USER, segments=[TextSegment(text=text)])

    @classmethod
    def for_model(
        cls,
        text: str,
        tool_calls: list[ToolCallSegment] | None = None,
        stopped: bool = False,
    ) -> Turn:
        segments: list[Any] = []
        if text:
            segments.append(TextSegment(text=text))
        segments.extend(tool_calls or [])
        return cls(role=TurnRole.MODEL, segments=segments, stopped=stopped)

    @classmethod
    def for_tool_result(cls, call_id: str, name: str, result: dict[str, Any]) -> Turn:
        return cls(
            role=TurnRole.TOOL_RESULT,
            segments=[ToolResultSegment(call_id=call_id, name=name, result=result)],
        )


class Conversation(BaseModel):
    """Persisted form of a chat: identity, selections and the full turn log."""

    chat_id: str
    active_model_id: str | None = None
    active_personality_id: str | None = None
    title: str | None = None
    title_generated: bool = False
    last_updated: datetime = Field(default_factory=utcnow)
    turns: list[Turn] = Field(default_factory=list)


class ChatSummary(BaseModel):
    """Listing entry for a stored chat."""

    chat_id: str
    title: str
    last_updated: datetime
    active_model_id: str | None = None


# --- Tools ---


class ToolCallRequest(BaseModel):
    call_id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolSchema(BaseModel):
    """Provider-neutral function declaration (JSON-schema parameters)."""

    name: str
    description: str
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


def derive_title(turns: list[Turn], max_chars: int = 30) -> str:
    """Fallback title: first line of the first user message, clipped."""
    for turn in turns:
        if turn.role == TurnRole.USER and turn.text.strip():
            first_line = turn.text.strip().splitlines()[0]
            if len(first_line) > max_chars:
                return first_line[:max_chars] + "..."
            return first_line
    return "New Chat"
