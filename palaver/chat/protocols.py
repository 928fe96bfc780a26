"""Collaborator interfaces the session manager and coordinator depend on.

Concrete file-backed implementations live in palaver.storage and
palaver.services; tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Protocol

from palaver.conversation.schemas import ChatSummary, Conversation
from palaver.services.settings_provider import Defaults, ModelConfig, PersonalityConfig


class Storage(Protocol):
    async def load_conversation(self, chat_id: str) -> Conversation | None: ...

    async def save_conversation(self, conversation: Conversation) -> None: ...

    async def delete_conversation(self, chat_id: str) -> bool: ...

    async def list_conversations(self) -> list[ChatSummary]: ...


class SettingsProvider(Protocol):
    def get_api_key(self, provider: str) -> str | None: ...

    def get_personality_config(self, personality_id: str) -> PersonalityConfig: ...

    def get_model_config(self, model_id: str) -> ModelConfig: ...

    def get_defaults(self) -> Defaults: ...

    def list_personalities(self) -> list[PersonalityConfig]: ...


class PromptProvider(Protocol):
    async def load_system_prompt(self, prompt_id: str | None) -> str: ...

    async def load_context(self, context_set_ids: list[str]) -> str: ...


class UsageTracker(Protocol):
    async def record_usage(self, input_tokens: int, output_tokens: int) -> object: ...


class TitleSource(Protocol):
    async def generate(self, first_user_text: str, first_model_text: str) -> str | None: ...
