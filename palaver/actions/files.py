"""Small JSON/text file helpers for action side effects.

File I/O runs in a worker thread via asyncio.to_thread; writes go through
a temp file and rename so a crash never leaves a half-written document.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


class JsonListFile:
    """A JSON array on disk. Missing or corrupt files read as empty."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock = asyncio.Lock()

    def _read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Corrupt JSON in %s, treating as empty", self.path)
            return []
        return data if isinstance(data, list) else []

    async def load(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._read)

    async def save(self, items: list[dict[str, Any]]) -> None:
        await asyncio.to_thread(_write_atomic, self.path, json.dumps(items, indent=2))

    async def append(self, item: dict[str, Any]) -> None:
        async with self.lock:
            items = await self.load()
            items.append(item)
            await self.save(items)


class TextFile:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock = asyncio.Lock()

    def _read(self) -> str:
        return self.path.read_text(encoding="utf-8") if self.path.exists() else ""

    async def read(self) -> str:
        return await asyncio.to_thread(self._read)

    async def write(self, text: str) -> None:
        await asyncio.to_thread(_write_atomic, self.path, text)
