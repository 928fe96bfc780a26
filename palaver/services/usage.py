"""Daily token usage ledger: one JSON file per UTC day.

``<data_dir>/token_usage/YYYY-MM-DD.json`` holds ``{input, output, total}``
accumulated over every completed model call of that day.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import date
from pathlib import Path

from pydantic import BaseModel

from palaver.utils import utcnow

logger = logging.getLogger(__name__)


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


class DailyTotals(BaseModel):
    input: int = 0
    output: int = 0
    total: int = 0


class DailyUsageTracker:
    """Accumulates token counts per day.

    Writes are serialized through a lock so concurrent reports from
    overlapping requests cannot lose increments.
    """

    def __init__(self, data_dir: str | Path) -> None:
        self._dir = Path(data_dir) / "token_usage"
        self._lock = asyncio.Lock()

    def _path(self, day: date) -> Path:
        return self._dir / f"{day.isoformat()}.json"

    async def record_usage(self, input_tokens: int, output_tokens: int) -> DailyTotals | None:
        """Add a delta to today's totals. Negative or non-integer counts are rejected."""
        if (
            not isinstance(input_tokens, int)
            or not isinstance(output_tokens, int)
            or input_tokens < 0
            or output_tokens < 0
        ):
            logger.warning("Rejected invalid token counts: input=%r output=%r", input_tokens, output_tokens)
            return None

        async with self._lock:
            path = self._path(utcnow().date())
            totals = await asyncio.to_thread(self._read, path)
            totals.input += input_tokens
            totals.output += output_tokens
            totals.total = totals.input + totals.output
            await asyncio.to_thread(self._write, path, totals)
        logger.debug("Usage +%d/+%d (day total %d)", input_tokens, output_tokens, totals.total)
        return totals

    async def read_day(self, day: date | None = None) -> DailyTotals:
        return await asyncio.to_thread(self._read, self._path(day or utcnow().date()))

    def _read(self, path: Path) -> DailyTotals:
        if not path.exists():
            return DailyTotals()
        try:
            return DailyTotals.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValueError):
            logger.warning("Corrupt usage file %s, starting from zero", path)
            return DailyTotals()

    def _write(self, path: Path, totals: DailyTotals) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(totals.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)
