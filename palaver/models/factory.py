"""Adapter construction by api family."""

from __future__ import annotations

import httpx

from palaver.config import Settings
from palaver.errors import ConfigurationError
from palaver.models.base import ModelAdapter
from palaver.models.gemini import GeminiAdapter
from palaver.models.openai_chat import OpenAIChatAdapter, OpenAIReasoningAdapter

ADAPTERS: dict[str, type[ModelAdapter]] = {
    OpenAIChatAdapter.kind: OpenAIChatAdapter,
    OpenAIReasoningAdapter.kind: OpenAIReasoningAdapter,
    GeminiAdapter.kind: GeminiAdapter,
}


def create_adapter(
    api_family: str,
    settings: Settings,
    http: httpx.AsyncClient | None = None,
) -> ModelAdapter:
    """Build an uninitialized adapter for ``api_family``."""
    adapter_cls = ADAPTERS.get(api_family)
    if adapter_cls is None:
        raise ConfigurationError(f"Unsupported api family: {api_family}")
    return adapter_cls(settings, http=http)
