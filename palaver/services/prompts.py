"""PromptProvider: system prompt text and user context assembly from files.

Context sets name lists of text files; the reserved ``notes`` set reads the
notes file written by the make_note tool.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from palaver.errors import ConfigurationError
from palaver.services.settings_provider import ConfigFile

logger = logging.getLogger(__name__)

NOTES_CONTEXT_SET = "notes"


class FilePromptProvider:
    def __init__(self, config: ConfigFile, data_dir: str | Path) -> None:
        self._config = config
        self._data_dir = Path(data_dir)

    async def load_system_prompt(self, prompt_id: str | None) -> str:
        """Read a prompt file by id. Missing id yields an empty prompt."""
        if not prompt_id:
            return ""
        prompt = self._config.get_prompt_config(prompt_id)
        path = self._config.resolve_path(prompt.path)
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read prompt {prompt_id} at {path}: {e}") from e

    async def load_context(self, context_set_ids: list[str]) -> str:
        """Concatenate the files of each context set, in order.

        Unreadable files are skipped with a warning; an unknown set id is
        skipped too.
        """
        sections: list[str] = []
        for set_id in context_set_ids:
            if set_id == NOTES_CONTEXT_SET:
                notes = await self._read_optional(self._data_dir / "notes.txt")
                if notes.strip():
                    sections.append(f"--- Notes ---\n{notes.strip()}")
                continue

            context_set = self._config.get_context_set(set_id)
            if context_set is None:
                logger.warning("Unknown context set: %s", set_id)
                continue
            for file in context_set.files:
                text = await self._read_optional(self._config.resolve_path(file))
                if text.strip():
                    sections.append(text.strip())
        return "\n\n".join(sections)

    async def _read_optional(self, path: Path) -> str:
        if not path.exists():
            return ""
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            logger.warning("Cannot read context file %s: %s", path, e)
            return ""
