"""File-backed chat storage: one JSON document per chat.

``<data_dir>/chats/<chat_id>.json`` holds a serialized Conversation.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from pydantic import ValidationError

from palaver.conversation.schemas import ChatSummary, Conversation, derive_title

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class JsonChatStorage:
    def __init__(self, data_dir: str | Path) -> None:
        self._dir = Path(data_dir) / "chats"

    def _path(self, chat_id: str) -> Path:
        if not _SAFE_ID.match(chat_id):
            raise ValueError(f"Invalid chat id: {chat_id!r}")
        return self._dir / f"{chat_id}.json"

    async def load_conversation(self, chat_id: str) -> Conversation | None:
        """Return the stored chat, or None if it does not exist or is unreadable."""
        path = self._path(chat_id)
        if not path.exists():
            return None
        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
            return Conversation.model_validate_json(raw)
        except (OSError, ValidationError) as e:
            logger.error("Failed to load chat %s: %s", chat_id, e)
            return None

    async def save_conversation(self, conversation: Conversation) -> None:
        path = self._path(conversation.chat_id)
        data = conversation.model_dump_json(indent=2)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(data, encoding="utf-8")
            tmp.replace(path)

        await asyncio.to_thread(_write)

    async def delete_conversation(self, chat_id: str) -> bool:
        path = self._path(chat_id)
        if not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        logger.info("Deleted chat %s", chat_id)
        return True

    async def list_conversations(self) -> list[ChatSummary]:
        """All stored chats, most recently updated first."""
        if not self._dir.exists():
            return []
        summaries: list[ChatSummary] = []
        for path in await asyncio.to_thread(lambda: sorted(self._dir.glob("*.json"))):
            conversation = await self.load_conversation(path.stem)
            if conversation is None:
                continue
            summaries.append(ChatSummary(
                chat_id=conversation.chat_id,
                title=conversation.title or derive_title(conversation.turns),
                last_updated=conversation.last_updated,
                active_model_id=conversation.active_model_id,
            ))
        summaries.sort(key=lambda s: s.last_updated, reverse=True)
        return summaries
