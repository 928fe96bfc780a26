"""Palaver entry point.

Initializes all components and starts the server:
  Settings -> ConfigFile -> Storage/Prompts/Usage -> ActionRegistry -> ChatSessionManager -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from starlette.applications import Starlette

from palaver.actions.builtin import register_builtin_actions
from palaver.api.rest import create_app
from palaver.actions.registry import ActionRegistry
from palaver.chat.manager import ChatSessionManager
from palaver.config import Settings
from palaver.errors import ConfigurationError
from palaver.models.base import resolve_api_key
from palaver.services.prompts import FilePromptProvider
from palaver.services.settings_provider import ConfigFile
from palaver.services.titles import TitleGenerator
from palaver.services.usage import DailyUsageTracker
from palaver.storage.chats import JsonChatStorage

logger = logging.getLogger(__name__)


def create_components(
    settings: Settings,
    config: ConfigFile | None = None,
    usage_tracker: DailyUsageTracker | None = None,
) -> dict:
    """Initialize all components in dependency order.

    Nothing here needs the event loop; the first chat is opened by
    ``start_components`` once the server is running.

    1. ConfigFile - models, personalities, prompts, keys
    2. Storage, prompts and usage tracker - file-backed services
    3. ActionRegistry - built-in tools
    4. TitleGenerator - optional (None without an OpenAI key)
    5. ChatSessionManager
    """
    config = config or ConfigFile.load(settings.config_path)
    Path(settings.data_dir).mkdir(parents=True, exist_ok=True)

    storage = JsonChatStorage(settings.data_dir)
    prompts = FilePromptProvider(config, settings.data_dir)
    usage_tracker = usage_tracker or DailyUsageTracker(settings.data_dir)

    registry = ActionRegistry()
    register_builtin_actions(registry, settings)

    title_generator = None
    if settings.title_enabled:
        try:
            title_generator = TitleGenerator(settings, resolve_api_key("openai", config, settings))
        except ConfigurationError:
            logger.info("No OpenAI key available, AI chat titles disabled")

    manager = ChatSessionManager(
        settings,
        config,
        prompts,
        storage,
        registry,
        usage_tracker=usage_tracker,
        title_generator=title_generator,
    )

    return {
        "config": config,
        "storage": storage,
        "prompts": prompts,
        "usage_tracker": usage_tracker,
        "registry": registry,
        "title_generator": title_generator,
        "manager": manager,
    }


async def start_components(components: dict) -> None:
    await components["manager"].start_new_chat()


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Palaver...")

    manager = components.get("manager")
    if manager:
        await manager.close()

    title_generator = components.get("title_generator")
    if title_generator:
        await title_generator.close()

    logger.info("Palaver shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; the lifespan opens the first chat and shuts down."""
    components = create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await start_components(components)
        app.state.components = components
        logger.info(
            "Palaver started: data_dir=%s, max_tool_depth=%d",
            settings.data_dir,
            settings.max_tool_depth,
        )
        yield
        await shutdown_components(components)

    return create_app(
        manager=components["manager"],
        settings=settings,
        usage_tracker=components["usage_tracker"],
        lifespan=lifespan,
    )


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Palaver (config=%s, data_dir=%s)", settings.config_path, settings.data_dir)

    if not settings.openai_api_key and not settings.gemini_api_key:
        logger.warning(
            "Neither OPENAI_API_KEY nor GEMINI_API_KEY is set; "
            "models need api_keys in the config file"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
