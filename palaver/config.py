"""Settings via pydantic-settings with PALAVER_ env prefix.

Provider API keys use validation_alias to read from the same unprefixed
env vars (OPENAI_API_KEY, GEMINI_API_KEY) the provider SDKs use, so an
existing shell environment works without renaming anything.  Keys in
config.json take precedence over these (see models.base.resolve_api_key).
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PALAVER_", env_file=".env")

    # Files
    config_path: str = "config.json"
    data_dir: str = "data"
    log_level: str = "info"

    # Runtime
    host: str = "127.0.0.1"
    port: int = 8000

    # Provider credentials (fallback after config.json api_keys)
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    gemini_api_key: str = Field("", validation_alias="GEMINI_API_KEY")

    # Provider endpoints
    openai_base_url: str = "https://api.openai.com/v1"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Generation
    temperature: float = 0.7
    top_p: float = 0.9
    reasoning_effort: str = "medium"

    # Tool loop
    max_tool_depth: int = 5  # Max follow-up model calls after tool results

    # Titles
    title_enabled: bool = True
    title_model: str = "gpt-4.1-nano"

    @model_validator(mode="after")
    def _validate_depth(self) -> "Settings":
        if self.max_tool_depth < 1:
            raise ValueError("max_tool_depth must be >= 1")
        return self
