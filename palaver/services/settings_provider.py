"""File-backed settings source: models, personalities, prompts, API keys.

Loaded once from ``config.json``.  Personalities bind a system prompt, a
default model, an allowed tool list and default context sets.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from palaver.errors import ConfigurationError

logger = logging.getLogger(__name__)

ApiFamily = Literal["gpt", "openai-reasoning", "gemini"]


class ModelConfig(BaseModel):
    id: str
    name: str  # provider model name sent on the wire
    api_family: ApiFamily = "gpt"
    provider: Literal["openai", "gemini"] = "openai"
    default_params: dict[str, Any] = Field(default_factory=dict)


class PromptConfig(BaseModel):
    id: str
    path: str


class ContextSetConfig(BaseModel):
    id: str
    name: str = ""
    files: list[str] = Field(default_factory=list)


class PersonalityConfig(BaseModel):
    id: str
    name: str = ""
    prompt_id: str | None = None
    model_id: str | None = None
    tools: list[str] | None = None  # None = every registered tool
    default_context_set_ids: list[str] = Field(default_factory=list)
    custom_instructions: str = ""


class Defaults(BaseModel):
    personality_id: str | None = None
    model_id: str | None = None


class AppConfig(BaseModel):
    api_keys: dict[str, str] = Field(default_factory=dict)
    defaults: Defaults = Field(default_factory=Defaults)
    models: list[ModelConfig] = Field(default_factory=list)
    prompts: list[PromptConfig] = Field(default_factory=list)
    context_sets: list[ContextSetConfig] = Field(default_factory=list)
    personalities: list[PersonalityConfig] = Field(default_factory=list)


class ConfigFile:
    """SettingsProvider backed by a JSON document.

    Lookups raise ConfigurationError for unknown ids; ``get_api_key``
    returns None so callers can fall back to the environment.
    """

    def __init__(self, config: AppConfig, base_dir: Path | None = None) -> None:
        self.config = config
        self.base_dir = base_dir or Path.cwd()
        self._models = {m.id: m for m in config.models}
        self._personalities = {p.id: p for p in config.personalities}
        self._prompts = {p.id: p for p in config.prompts}
        self._context_sets = {c.id: c for c in config.context_sets}

    @classmethod
    def load(cls, path: str | Path) -> ConfigFile:
        path = Path(path)
        if not path.exists():
            logger.warning("Config file %s not found, using empty configuration", path)
            return cls(AppConfig(), base_dir=path.parent)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            config = AppConfig.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as e:
            raise ConfigurationError(f"Invalid config file {path}: {e}") from e
        logger.info(
            "Loaded config: %d models, %d personalities",
            len(config.models),
            len(config.personalities),
        )
        return cls(config, base_dir=path.parent)

    def get_api_key(self, provider: str) -> str | None:
        return self.config.api_keys.get(provider) or None

    def get_model_config(self, model_id: str) -> ModelConfig:
        model = self._models.get(model_id)
        if model is None:
            raise ConfigurationError(f"Unknown model: {model_id}")
        return model

    def get_personality_config(self, personality_id: str) -> PersonalityConfig:
        personality = self._personalities.get(personality_id)
        if personality is None:
            raise ConfigurationError(f"Unknown personality: {personality_id}")
        return personality

    def get_prompt_config(self, prompt_id: str) -> PromptConfig:
        prompt = self._prompts.get(prompt_id)
        if prompt is None:
            raise ConfigurationError(f"Unknown prompt: {prompt_id}")
        return prompt

    def get_context_set(self, context_set_id: str) -> ContextSetConfig | None:
        return self._context_sets.get(context_set_id)

    def get_defaults(self) -> Defaults:
        return self.config.defaults

    def list_personalities(self) -> list[PersonalityConfig]:
        return list(self.config.personalities)

    def resolve_path(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.base_dir / p
