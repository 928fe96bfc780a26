"""ChatSessionManager: the façade the boundary talks to.

Owns the active chat (metadata + ConversationStore), the active model
adapter and at most one in-flight StreamSession.  All lifecycle
transitions (new chat, load, model/personality switch, send, edit,
cancel) go through here.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import aclosing

from palaver.actions.base import ToolContext
from palaver.actions.registry import ActionRegistry
from palaver.chat.coordinator import StreamCoordinator
from palaver.chat.protocols import PromptProvider, SettingsProvider, Storage, TitleSource, UsageTracker
from palaver.chat.schemas import ChatEvent, ChatIdentity, StreamSession, StreamState
from palaver.config import Settings
from palaver.conversation.schemas import (
    ChatSummary,
    Conversation,
    ToolSchema,
    Turn,
    TurnRole,
    derive_title,
)
from palaver.conversation.store import ConversationStore
from palaver.errors import ConfigurationError, InvalidOperationError, NotFoundError
from palaver.models.base import ModelAdapter, PersonalityContext, resolve_api_key
from palaver.models.factory import create_adapter
from palaver.services.settings_provider import PersonalityConfig
from palaver.utils import new_chat_id, utcnow

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str, Settings], ModelAdapter]


class ChatSessionManager:
    def __init__(
        self,
        settings: Settings,
        settings_provider: SettingsProvider,
        prompts: PromptProvider,
        storage: Storage,
        registry: ActionRegistry,
        usage_tracker: UsageTracker | None = None,
        adapter_factory: AdapterFactory = create_adapter,
        title_generator: TitleSource | None = None,
    ) -> None:
        self._settings = settings
        self._settings_provider = settings_provider
        self._prompts = prompts
        self._storage = storage
        self._registry = registry
        self._adapter_factory = adapter_factory
        self._title_generator = title_generator
        self._coordinator = StreamCoordinator(registry, usage_tracker, settings.max_tool_depth)

        self._conversation: Conversation | None = None
        self._store = ConversationStore()
        self._personality: PersonalityConfig | None = None
        self._adapter: ModelAdapter | None = None
        self._session: StreamSession | None = None
        self._retired: list[ModelAdapter] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def chat_id(self) -> str | None:
        return self._conversation.chat_id if self._conversation else None

    @property
    def adapter(self) -> ModelAdapter | None:
        return self._adapter

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def is_streaming(self) -> bool:
        return self._session is not None

    def conversation(self) -> Conversation:
        """Snapshot of the active chat including its turns."""
        conversation = self._require_chat()
        return conversation.model_copy(update={"turns": self._store.turns})

    def identity(self, deleted_chat_id: str | None = None) -> ChatIdentity:
        conversation = self._require_chat()
        return ChatIdentity(
            chat_id=conversation.chat_id,
            personality_id=conversation.active_personality_id,
            model_id=conversation.active_model_id,
            deleted_chat_id=deleted_chat_id,
            title=conversation.title,
        )

    # ------------------------------------------------------------------
    # Chat lifecycle
    # ------------------------------------------------------------------

    async def start_new_chat(self) -> ChatIdentity:
        """Create and persist an empty chat with the default personality.

        The previous chat is deleted from storage if it never got past its
        first turn.
        """
        self._ensure_idle()
        personality = self._default_personality()
        model_id = self._pick_model_id(personality, None)
        adapter = await self._try_build_adapter(personality, model_id)

        deleted = await self._cleanup_empty_chat(keep_chat_id=None)

        self._conversation = Conversation(
            chat_id=new_chat_id(),
            active_model_id=model_id,
            active_personality_id=personality.id if personality else None,
        )
        self._store = ConversationStore()
        self._personality = personality
        await self._swap_adapter(adapter)
        await self._persist()
        logger.info("Started chat %s (personality=%s, model=%s)", self.chat_id,
                    self._conversation.active_personality_id, model_id)
        return self.identity(deleted_chat_id=deleted)

    async def load_chat(self, chat_id: str) -> ChatIdentity:
        self._ensure_idle()
        conversation = await self._storage.load_conversation(chat_id)
        if conversation is None:
            raise NotFoundError(f"Chat not found: {chat_id}")

        store = ConversationStore(conversation.turns)
        personality = self._personality_or_default(conversation.active_personality_id)
        model_id = self._pick_model_id(personality, conversation.active_model_id)
        adapter = await self._try_build_adapter(personality, model_id)

        deleted = await self._cleanup_empty_chat(keep_chat_id=chat_id)

        self._conversation = conversation.model_copy(update={
            "turns": [],
            "active_model_id": model_id,
            "active_personality_id": personality.id if personality else None,
        })
        self._store = store
        self._personality = personality
        await self._swap_adapter(adapter)
        logger.info("Loaded chat %s (%d turns)", chat_id, len(store))
        return self.identity(deleted_chat_id=deleted)

    async def list_chats(self) -> list[ChatSummary]:
        return await self._storage.list_conversations()

    async def _cleanup_empty_chat(self, keep_chat_id: str | None) -> str | None:
        conversation = self._conversation
        if conversation is None or conversation.chat_id == keep_chat_id:
            return None
        if len(self._store) > 1:
            return None
        if await self._storage.delete_conversation(conversation.chat_id):
            logger.info("Removed empty chat %s", conversation.chat_id)
            return conversation.chat_id
        return None

    # ------------------------------------------------------------------
    # Model / personality switching
    # ------------------------------------------------------------------

    async def set_active_model(self, model_id: str) -> ChatIdentity:
        """Switch the model for the active chat. History is untouched."""
        conversation = self._require_chat()
        adapter = await self._build_adapter(self._personality, model_id)
        await self._swap_adapter(adapter)
        conversation.active_model_id = model_id
        await self._persist()
        logger.info("Chat %s switched to model %s", conversation.chat_id, model_id)
        return self.identity()

    async def set_active_personality(self, personality_id: str) -> ChatIdentity:
        conversation = self._require_chat()
        personality = self._settings_provider.get_personality_config(personality_id)
        model_id = self._pick_model_id(personality, None) or conversation.active_model_id
        adapter = await self._build_adapter(personality, model_id)
        await self._swap_adapter(adapter)
        self._personality = personality
        conversation.active_personality_id = personality_id
        conversation.active_model_id = model_id
        await self._persist()
        logger.info("Chat %s switched to personality %s", conversation.chat_id, personality_id)
        return self.identity()

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_user_message(self, text: str) -> AsyncGenerator[ChatEvent, None]:
        """Append and persist a user turn, then return the event stream for the reply.

        Validation happens immediately; the model is only called once the
        returned stream is iterated.  A stream that is never iterated holds
        no session, so dropping it leaves the chat idle.
        """
        conversation = self._require_chat()
        self._ensure_idle()
        if not text.strip():
            raise InvalidOperationError("Message is empty")
        self._require_adapter()
        self._store.append(Turn.for_user(text))
        await self._persist()
        return self._stream(conversation.chat_id)

    async def edit_user_message(self, turn_id: str, new_text: str) -> AsyncGenerator[ChatEvent, None]:
        """Replace a past user turn, drop everything after it and regenerate.

        The truncated history is persisted before this returns.
        """
        conversation = self._require_chat()
        self._ensure_idle()
        if not new_text.strip():
            raise InvalidOperationError("Message is empty")
        self._require_adapter()
        self._store.edit_user_turn(turn_id, new_text)
        await self._persist()
        return self._stream(conversation.chat_id)

    def cancel_active_stream(self) -> bool:
        if self._session is None:
            return False
        self._session.cancel_token.cancel()
        logger.info("Cancellation requested for chat %s", self.chat_id)
        return True

    def list_tool_schemas(self, names: list[str] | None = None) -> list[ToolSchema]:
        return self._registry.get_schemas(names)

    def active_tool_schemas(self) -> list[ToolSchema]:
        tools = self._personality.tools if self._personality else None
        return self._registry.get_schemas(tools)

    async def _stream(self, chat_id: str) -> AsyncGenerator[ChatEvent, None]:
        if self.chat_id != chat_id:
            raise InvalidOperationError("The chat changed before the response started")
        self._ensure_idle()
        adapter = self._require_adapter()
        session = self._claim_session(adapter)
        try:
            context = ToolContext(chat_id=chat_id)
            async with aclosing(
                self._coordinator.run(adapter, self._store, session, self.active_tool_schemas(), context)
            ) as events:
                async for event in events:
                    yield event
            await self._persist()
            if session.state == StreamState.COMPLETED:
                await self._maybe_generate_title()
        finally:
            self._session = None
            await self._close_retired()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_chat(self) -> Conversation:
        if self._conversation is None:
            raise InvalidOperationError("No active chat")
        return self._conversation

    def _require_adapter(self) -> ModelAdapter:
        if self._adapter is None:
            raise ConfigurationError("No model adapter is available for this chat (check model and API key)")
        return self._adapter

    def _ensure_idle(self) -> None:
        if self._session is not None:
            raise InvalidOperationError("A response is already streaming for this chat")

    def _claim_session(self, adapter: ModelAdapter) -> StreamSession:
        self._session = StreamSession(adapter_kind=adapter.kind)
        return self._session

    def _default_personality(self) -> PersonalityConfig | None:
        return self._personality_or_default(self._settings_provider.get_defaults().personality_id)

    def _personality_or_default(self, personality_id: str | None) -> PersonalityConfig | None:
        if personality_id:
            try:
                return self._settings_provider.get_personality_config(personality_id)
            except ConfigurationError:
                logger.warning("Personality %s no longer configured, using default", personality_id)
        default_id = self._settings_provider.get_defaults().personality_id
        if default_id and default_id != personality_id:
            return self._settings_provider.get_personality_config(default_id)
        personalities = self._settings_provider.list_personalities()
        return personalities[0] if personalities else None

    def _pick_model_id(self, personality: PersonalityConfig | None, preferred: str | None) -> str | None:
        if preferred:
            return preferred
        if personality and personality.model_id:
            return personality.model_id
        return self._settings_provider.get_defaults().model_id

    async def _build_adapter(self, personality: PersonalityConfig | None, model_id: str | None) -> ModelAdapter:
        if not model_id:
            raise ConfigurationError("No model selected and no default model configured")
        model = self._settings_provider.get_model_config(model_id)
        api_key = resolve_api_key(model.provider, self._settings_provider, self._settings)

        system_prompt = await self._prompts.load_system_prompt(personality.prompt_id if personality else None)
        context = await self._prompts.load_context(personality.default_context_set_ids if personality else [])
        personality_context = PersonalityContext(
            system_prompt=system_prompt,
            context=context,
            custom_instructions=personality.custom_instructions if personality else "",
            params=dict(model.default_params),
        )

        adapter = self._adapter_factory(model.api_family, self._settings)
        try:
            adapter.initialize(api_key, model.name, personality_context)
        except Exception:
            await adapter.aclose()
            raise
        return adapter

    async def _try_build_adapter(
        self, personality: PersonalityConfig | None, model_id: str | None
    ) -> ModelAdapter | None:
        """Build an adapter for a chat being opened; a chat can exist without one."""
        try:
            return await self._build_adapter(personality, model_id)
        except ConfigurationError as e:
            logger.warning("Chat opened without a model adapter: %s", e)
            return None

    async def _swap_adapter(self, adapter: ModelAdapter | None) -> None:
        old = self._adapter
        self._adapter = adapter
        if old is None or old is adapter:
            return
        if self._session is not None:
            # In-flight stream still holds the old adapter
            self._retired.append(old)
        else:
            await old.aclose()

    async def _close_retired(self) -> None:
        retired, self._retired = self._retired, []
        for adapter in retired:
            await adapter.aclose()

    async def _persist(self) -> None:
        conversation = self._require_chat()
        conversation.last_updated = utcnow()
        if not conversation.title_generated:
            conversation.title = derive_title(self._store.turns)
        await self._storage.save_conversation(self.conversation())

    async def _maybe_generate_title(self) -> None:
        conversation = self._require_chat()
        if conversation.title_generated or self._title_generator is None:
            return
        turns = self._store.turns
        first_user = next((t.text for t in turns if t.role == TurnRole.USER and t.text), "")
        first_model = next((t.text for t in turns if t.role == TurnRole.MODEL and t.text), "")
        if not first_user or not first_model:
            return
        title = await self._title_generator.generate(first_user, first_model)
        if not title:
            return
        conversation.title = title
        conversation.title_generated = True
        await self._persist()
        logger.info("Generated title for chat %s: %s", conversation.chat_id, title)

    async def close(self) -> None:
        if self._session is not None:
            self._session.cancel_token.cancel()
        await self._close_retired()
        if self._adapter is not None:
            await self._adapter.aclose()
            self._adapter = None
