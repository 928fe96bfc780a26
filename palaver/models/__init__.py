"""Model adapters: one per provider wire format."""

from palaver.models.base import (
    CallFragment,
    ChunkShape,
    ModelAdapter,
    NormalizedChunk,
    PersonalityContext,
    StreamHandle,
    resolve_api_key,
)
from palaver.models.factory import ADAPTERS, create_adapter
from palaver.models.gemini import GeminiAdapter
from palaver.models.openai_chat import OpenAIChatAdapter, OpenAIReasoningAdapter

__all__ = [
    "ADAPTERS",
    "CallFragment",
    "ChunkShape",
    "GeminiAdapter",
    "ModelAdapter",
    "NormalizedChunk",
    "OpenAIChatAdapter",
    "OpenAIReasoningAdapter",
    "PersonalityContext",
    "StreamHandle",
    "create_adapter",
    "resolve_api_key",
]
