"""Shared fixtures: settings, scripted adapters, in-memory collaborators."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from palaver.actions.builtin import register_builtin_actions
from palaver.actions.registry import ActionRegistry
from palaver.config import Settings
from palaver.conversation.schemas import ChatSummary, Conversation, ToolSchema, Turn, derive_title
from palaver.models.base import ModelAdapter, PersonalityContext, StreamHandle
from palaver.models.gemini import GeminiAdapter
from palaver.models.openai_chat import OpenAIChatAdapter
from palaver.services.settings_provider import AppConfig, ConfigFile

# ---------------------------------------------------------------------------
# Raw chunk builders
# ---------------------------------------------------------------------------


def text_chunk(text: str) -> dict[str, Any]:
    """Chat-completions delta carrying text."""
    return {"choices": [{"index": 0, "delta": {"content": text}}]}


def call_chunk(
    index: int,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict[str, Any]:
    """Chat-completions delta carrying one tool-call fragment."""
    tool_call: dict[str, Any] = {"index": index}
    if call_id:
        tool_call["id"] = call_id
        tool_call["type"] = "function"
    function: dict[str, Any] = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    tool_call["function"] = function
    return {"choices": [{"index": 0, "delta": {"tool_calls": [tool_call]}}]}


def usage_chunk(prompt_tokens: int, completion_tokens: int) -> dict[str, Any]:
    return {
        "choices": [],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def gemini_text(text: str) -> dict[str, Any]:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def gemini_call(name: str, args: dict[str, Any]) -> dict[str, Any]:
    return {"candidates": [{"content": {"role": "model", "parts": [{"functionCall": {"name": name, "args": args}}]}}]}


# ---------------------------------------------------------------------------
# Scripted adapters
# ---------------------------------------------------------------------------

# Script item that blocks the stream until it is cancelled
STALL = object()


class _ScriptedMixin:
    """Replays scripted raw chunks instead of calling a provider.

    ``scripts`` holds one entry per expected model call: a list of raw
    chunks (an Exception inside the list is raised mid-stream, STALL
    blocks forever), or an Exception raised from send_turn itself.
    """

    def __init__(self, settings: Settings, scripts: list[Any] | None = None) -> None:
        super().__init__(settings)
        self.scripts: list[Any] = list(scripts or [])
        self.histories: list[list[Turn]] = []
        self.tool_schemas_seen: list[list[ToolSchema]] = []
        self.closed = False
        self.streams_closed = 0

    def initialize(self, api_key: str, model_name: str, personality: PersonalityContext) -> None:
        self._api_key = api_key
        self._model_name = model_name
        self._personality = personality
        self._initialized = True

    async def send_turn(self, history, new_message, tool_schemas):
        self.histories.append(list(history))
        self.tool_schemas_seen.append(list(tool_schemas))
        if not self.scripts:
            raise AssertionError("No scripted response left")
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script

        async def chunks():
            try:
                for item in script:
                    if item is STALL:
                        await asyncio.Event().wait()
                    if isinstance(item, Exception):
                        raise item
                    yield item
            finally:
                self.streams_closed += 1

        return StreamHandle(chunks(), self.extract_usage)

    async def aclose(self) -> None:
        self.closed = True


class ScriptedDeltaAdapter(_ScriptedMixin, OpenAIChatAdapter):
    pass


class ScriptedWholeCallAdapter(_ScriptedMixin, GeminiAdapter):
    pass


class ScriptedFactory:
    """Adapter factory whose adapters all pop from one shared script queue."""

    def __init__(self) -> None:
        self.scripts: list[Any] = []
        self.created: list[ModelAdapter] = []

    def __call__(self, api_family: str, settings: Settings) -> ModelAdapter:
        cls = ScriptedWholeCallAdapter if api_family == "gemini" else ScriptedDeltaAdapter
        adapter = cls(settings)
        adapter.scripts = self.scripts
        self.created.append(adapter)
        return adapter


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class InMemoryStorage:
    def __init__(self) -> None:
        self.chats: dict[str, Conversation] = {}
        self.deleted: list[str] = []

    async def load_conversation(self, chat_id: str) -> Conversation | None:
        stored = self.chats.get(chat_id)
        return stored.model_copy(deep=True) if stored else None

    async def save_conversation(self, conversation: Conversation) -> None:
        self.chats[conversation.chat_id] = conversation.model_copy(deep=True)

    async def delete_conversation(self, chat_id: str) -> bool:
        if chat_id in self.chats:
            del self.chats[chat_id]
            self.deleted.append(chat_id)
            return True
        return False

    async def list_conversations(self) -> list[ChatSummary]:
        return sorted(
            (
                ChatSummary(
                    chat_id=c.chat_id,
                    title=c.title or derive_title(c.turns),
                    last_updated=c.last_updated,
                    active_model_id=c.active_model_id,
                )
                for c in self.chats.values()
            ),
            key=lambda s: s.last_updated,
            reverse=True,
        )


class StaticPrompts:
    def __init__(self, prompt: str = "You are a helpful assistant.", context: str = "") -> None:
        self.prompt = prompt
        self.context = context

    async def load_system_prompt(self, prompt_id: str | None) -> str:
        return self.prompt

    async def load_context(self, context_set_ids: list[str]) -> str:
        return self.context


class RecordingUsage:
    def __init__(self) -> None:
        self.records: list[tuple[int, int]] = []

    async def record_usage(self, input_tokens: int, output_tokens: int) -> None:
        self.records.append((input_tokens, output_tokens))


class StaticTitles:
    def __init__(self, title: str | None = "Weather Chat") -> None:
        self.title = title
        self.calls: list[tuple[str, str]] = []

    async def generate(self, first_user_text: str, first_model_text: str) -> str | None:
        self.calls.append((first_user_text, first_model_text))
        return self.title


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        data_dir=str(tmp_path / "data"),
        OPENAI_API_KEY="sk-test",
        GEMINI_API_KEY="gm-test",
    )


@pytest.fixture
def app_config() -> ConfigFile:
    return ConfigFile(AppConfig.model_validate({
        "defaults": {"personality_id": "assistant", "model_id": "gpt-4o"},
        "models": [
            {"id": "gpt-4o", "name": "gpt-4o", "api_family": "gpt", "provider": "openai"},
            {"id": "o3", "name": "o3-mini", "api_family": "openai-reasoning", "provider": "openai"},
            {"id": "gemini-flash", "name": "gemini-2.0-flash", "api_family": "gemini", "provider": "gemini"},
        ],
        "personalities": [
            {"id": "assistant", "name": "Assistant", "model_id": "gpt-4o"},
            {
                "id": "planner",
                "name": "Planner",
                "model_id": "gemini-flash",
                "tools": ["create_event", "check_events"],
                "custom_instructions": "Be brief.",
            },
        ],
    }))


@pytest.fixture
def registry(settings) -> ActionRegistry:
    r = ActionRegistry()
    register_builtin_actions(r, settings)
    return r


@pytest_asyncio.fixture
async def storage() -> InMemoryStorage:
    return InMemoryStorage()
