"""ConversationStore: the ordered, append-mostly turn log for one chat.

The only mutation other than append is edit-and-truncate on a user turn.
Tool-result turns are checked against the call ids emitted so far, so the
log can never contain an orphaned or doubly-answered result.
"""

from __future__ import annotations

import logging
from typing import Any

from palaver.conversation.schemas import TextSegment, Turn, TurnRole
from palaver.errors import InvalidOperationError, NotFoundError
from palaver.utils import new_turn_id

logger = logging.getLogger(__name__)


class ConversationStore:
    """Mutable turn log with O(1) lookup by turn id."""

    def __init__(self, turns: list[Turn] | None = None) -> None:
        self._turns: list[Turn] = []
        self._index: dict[str, int] = {}
        self._emitted_calls: set[str] = set()
        self._answered_calls: set[str] = set()
        for turn in turns or []:
            self.append(turn)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def turns(self) -> list[Turn]:
        """Snapshot of the log; mutating the list does not affect the store."""
        return list(self._turns)

    def get(self, turn_id: str) -> Turn:
        position = self._index.get(turn_id)
        if position is None:
            raise NotFoundError(f"Turn not found: {turn_id}")
        return self._turns[position]

    def answered_call_ids(self) -> set[str]:
        return set(self._answered_calls)

    def unanswered_call_ids(self) -> set[str]:
        return self._emitted_calls - self._answered_calls

    def __len__(self) -> int:
        return len(self._turns)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append(self, turn: Turn) -> Turn:
        """Append a turn, assigning an id if it has none.

        Raises:
            InvalidOperationError: duplicate id, or a tool result whose call
                was never emitted or has already been answered.
        """
        if not turn.id:
            turn.id = new_turn_id()
            while turn.id in self._index:
                turn.id = new_turn_id()
        elif turn.id in self._index:
            raise InvalidOperationError(f"Duplicate turn id: {turn.id}")

        if turn.role == TurnRole.TOOL_RESULT:
            results = turn.tool_results
            if len(results) != 1:
                raise InvalidOperationError("A tool_result turn must carry exactly one tool result")
            call_id = results[0].call_id
            if call_id not in self._emitted_calls:
                raise InvalidOperationError(f"Tool result references unknown call id: {call_id}")
            if call_id in self._answered_calls:
                raise InvalidOperationError(f"Tool call already answered: {call_id}")
            self._answered_calls.add(call_id)
        elif turn.role == TurnRole.MODEL:
            for call in turn.tool_calls:
                self._emitted_calls.add(call.call_id)

        self._index[turn.id] = len(self._turns)
        self._turns.append(turn)
        return turn

    def truncate_after(self, turn_id: str) -> list[Turn]:
        """Drop every turn after ``turn_id`` (which must be a user turn).

        Returns the removed turns.
        """
        position = self._index.get(turn_id)
        if position is None:
            raise NotFoundError(f"Turn not found: {turn_id}")
        if self._turns[position].role != TurnRole.USER:
            raise InvalidOperationError("Only user turns can be truncated after")

        removed = self._turns[position + 1:]
        self._rebuild(self._turns[: position + 1])
        if removed:
            logger.debug("Truncated %d turns after %s", len(removed), turn_id)
        return removed

    def edit_user_turn(self, turn_id: str, new_text: str) -> Turn:
        """Replace a user turn's text in place and truncate everything after it."""
        turn = self.get(turn_id)
        if turn.role != TurnRole.USER:
            raise InvalidOperationError(f"Only user turns can be edited (turn {turn_id} is {turn.role})")
        self.truncate_after(turn_id)
        turn.segments = [TextSegment(text=new_text)]
        return turn

    def _rebuild(self, turns: list[Turn]) -> None:
        self._turns = []
        self._index = {}
        self._emitted_calls = set()
        self._answered_calls = set()
        for turn in turns:
            self.append(turn)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def serialize(self) -> list[dict[str, Any]]:
        return [turn.model_dump(mode="json") for turn in self._turns]

    @classmethod
    def deserialize(cls, data: list[dict[str, Any]]) -> ConversationStore:
        return cls([Turn.model_validate(item) for item in data])
