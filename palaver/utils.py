"""Shared utility functions for Palaver."""

from __future__ import annotations

import functools
import random
import string
import time
from datetime import UTC, datetime

import tiktoken

_ID_ALPHABET = string.ascii_lowercase + string.digits


@functools.lru_cache(maxsize=1)
def _encoding() -> tiktoken.Encoding:
    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(text: str) -> int:
    """Token count of ``text`` under the cl100k_base encoding."""
    if not text:
        return 0
    return len(_encoding().encode(text, disallowed_special=()))


def now_ms() -> int:
    return int(time.time() * 1000)


def utcnow() -> datetime:
    return datetime.now(UTC)


def random_suffix(length: int = 5) -> str:
    return "".join(random.choices(_ID_ALPHABET, k=length))


def new_turn_id() -> str:
    """Turn id of the form ``msg_<epoch-ms>_<5 random chars>``."""
    return f"msg_{now_ms()}_{random_suffix()}"


def new_record_id(prefix: str) -> str:
    """Id for tool side-effect records, e.g. ``alarm_1718000000000_x1y2z``."""
    return f"{prefix}_{now_ms()}_{random_suffix()}"


_last_chat_id = 0


def new_chat_id() -> str:
    """Time-derived chat id (epoch ms), bumped so two calls in the same ms differ."""
    global _last_chat_id
    candidate = now_ms()
    if candidate <= _last_chat_id:
        candidate = _last_chat_id + 1
    _last_chat_id = candidate
    return str(candidate)
