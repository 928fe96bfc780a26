"""Stream session state and the events emitted to the boundary."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class StreamState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class ChatEvent:
    """A single event in the normalized stream sent to the boundary."""

    type: str  # delta, tool_start, tool_end, final, stopped, error
    text: str = ""
    message: str = ""
    tool_name: str = ""
    turn_id: str = ""
    usage: dict[str, int] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        for key in ("text", "message", "tool_name", "turn_id"):
            value = getattr(self, key)
            if value:
                data[key] = value
        if self.usage:
            data["usage"] = self.usage
        return data


class CancelToken:
    """One-shot cancellation flag shared between the boundary and a stream."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class PendingCall:
    """Tool call being assembled from stream fragments."""

    call_id: str = ""
    name: str = ""
    argument_parts: list[str] = field(default_factory=list)


@dataclass
class StreamSession:
    """State of the single in-flight model exchange for a conversation."""

    adapter_kind: str
    cancel_token: CancelToken = field(default_factory=CancelToken)
    state: StreamState = StreamState.IDLE
    text_parts: list[str] = field(default_factory=list)
    pending_tool_calls: dict[int, PendingCall] = field(default_factory=dict)

    def reset_cycle(self) -> None:
        self.text_parts = []
        self.pending_tool_calls = {}

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


@dataclass
class ChatIdentity:
    chat_id: str
    personality_id: str | None
    model_id: str | None
    deleted_chat_id: str | None = None
    title: str | None = None
