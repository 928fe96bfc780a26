"""ModelAdapter interface and the shared streaming plumbing.

An adapter owns one provider's wire format: it translates canonical turns
into a request, opens a streamed HTTP response, and normalizes each raw
chunk into text and tool-call data.  The coordinator only ever branches on
``chunk_shape``:

- DELTA: tool calls arrive as fragments keyed by positional index; name
  and argument text must be concatenated across chunks.
- WHOLE_CALL: each tool call arrives complete in a single chunk.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar

import httpx

from palaver.config import Settings
from palaver.conversation.schemas import ToolCallRequest, ToolSchema, Turn
from palaver.errors import ConfigurationError, TransportError
from palaver.services.usage import TokenUsage

logger = logging.getLogger(__name__)

_ENV_KEY_NAMES = {"openai": "OPENAI_API_KEY", "gemini": "GEMINI_API_KEY"}


class ChunkShape(StrEnum):
    DELTA = "delta"
    WHOLE_CALL = "whole_call"


@dataclass
class CallFragment:
    """Partial tool call from a DELTA stream. Empty fields mean 'not in this chunk'."""

    index: int
    call_id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class NormalizedChunk:
    text: str = ""
    fragments: list[CallFragment] = field(default_factory=list)
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: TokenUsage | None = None


@dataclass
class PersonalityContext:
    """Everything an adapter needs to build the system instruction."""

    system_prompt: str = ""
    context: str = ""
    custom_instructions: str = ""
    params: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# API key lookup
# ---------------------------------------------------------------------------


def resolve_api_key(provider: str, settings_provider: Any, settings: Settings) -> str:
    """Configured settings source first, then environment.

    Raises:
        ConfigurationError: if neither yields a key.
    """
    key = settings_provider.get_api_key(provider) if settings_provider is not None else None
    if not key:
        key = {"openai": settings.openai_api_key, "gemini": settings.gemini_api_key}.get(provider, "")
    if not key:
        env_name = _ENV_KEY_NAMES.get(provider, f"{provider.upper()}_API_KEY")
        raise ConfigurationError(
            f"No API key for provider '{provider}': set api_keys.{provider} in config or {env_name}"
        )
    return key


# ---------------------------------------------------------------------------
# Stream plumbing
# ---------------------------------------------------------------------------


async def iter_sse_json(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Yield JSON payloads of ``data:`` lines from an open streamed response.

    Only processes data: lines (event:/comment lines are skipped).  Stops at
    the ``[DONE]`` sentinel.  In-stream error objects, malformed JSON and
    network failures all surface as TransportError.  The response is always
    closed on exit.
    """
    try:
        async for line in response.aiter_lines():
            if not line.startswith("data:"):
                continue
            payload = line[5:].strip()
            if not payload:
                continue
            if payload == "[DONE]":
                break
            try:
                data = json.loads(payload)
            except json.JSONDecodeError as e:
                raise TransportError(f"Malformed stream chunk: {payload[:200]}") from e
            if isinstance(data, dict) and data.get("error"):
                error = data["error"]
                message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                raise TransportError(f"Provider error in stream: {message}")
            yield data
    except httpx.TimeoutException as e:
        raise TransportError(f"Stream timed out: {e}") from e
    except httpx.HTTPError as e:
        raise TransportError(f"Stream interrupted: {e}") from e
    finally:
        await response.aclose()


class StreamHandle:
    """Finite, non-restartable async iterator over raw provider chunks.

    ``final()`` reports the cumulative usage seen in the stream, but only
    once the stream has been fully consumed.
    """

    def __init__(
        self,
        chunks: AsyncIterator[dict[str, Any]],
        extract_usage: Callable[[dict[str, Any]], TokenUsage | None] | None = None,
    ) -> None:
        self._chunks = chunks
        self._extract_usage = extract_usage
        self._usage: TokenUsage | None = None
        self._exhausted = False

    def __aiter__(self) -> StreamHandle:
        return self

    async def __anext__(self) -> dict[str, Any]:
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
            raise
        if self._extract_usage is not None:
            usage = self._extract_usage(chunk)
            if usage is not None:
                self._usage = usage
        return chunk

    def final(self) -> TokenUsage | None:
        return self._usage if self._exhausted else None

    async def aclose(self) -> None:
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()


# ---------------------------------------------------------------------------
# ModelAdapter
# ---------------------------------------------------------------------------


class ModelAdapter(ABC):
    """Base for provider adapters.

    Construct, then ``initialize()`` with a key, a provider model name and
    the personality context.  Each adapter owns its own httpx client unless
    one is injected.
    """

    kind: ClassVar[str]
    provider: ClassVar[str]
    chunk_shape: ClassVar[ChunkShape]

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None
        self._api_key = ""
        self._model_name = ""
        self._personality = PersonalityContext()
        self._initialized = False

    def initialize(self, api_key: str, model_name: str, personality: PersonalityContext) -> None:
        if not api_key:
            raise ConfigurationError(f"{self.kind} adapter requires a non-empty API key")
        if not model_name:
            raise ConfigurationError(f"{self.kind} adapter requires a model name")
        self._api_key = api_key
        self._model_name = model_name
        self._personality = personality
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    connect=self._settings.api_timeout_connect,
                    read=self._settings.api_timeout_read,
                    write=10.0,
                    pool=10.0,
                ),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        self._initialized = True
        logger.info("Initialized %s adapter (model=%s)", self.kind, model_name)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def personality(self) -> PersonalityContext:
        return self._personality

    async def send_turn(
        self,
        history: list[Turn],
        new_message: Turn | None,
        tool_schemas: list[ToolSchema],
    ) -> StreamHandle:
        """Open a streamed completion for ``history`` (+ ``new_message``).

        Returns once the response headers arrived with a 2xx status; the
        body is consumed through the returned handle.
        """
        if not self._initialized or self._http is None:
            raise ConfigurationError(f"{self.kind} adapter used before initialize()")

        turns = list(history)
        if new_message is not None:
            turns.append(new_message)
        url, headers, payload = self.build_request(turns, tool_schemas)

        request = self._http.build_request("POST", url, headers=headers, json=payload)
        try:
            response = await self._http.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.error("%s request timed out: %s", self.kind, e)
            raise TransportError(f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error("%s request failed: %s", self.kind, e)
            raise TransportError(f"Request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            body = await response.aread()
            await response.aclose()
            logger.error("%s API error %d: %s", self.kind, response.status_code, body[:500])
            raise TransportError(
                f"API error {response.status_code}: {body.decode(errors='replace')[:500]}",
                status_code=response.status_code,
            )

        return StreamHandle(iter_sse_json(response), self.extract_usage)

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    @abstractmethod
    def build_request(
        self, turns: list[Turn], tool_schemas: list[ToolSchema]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (url, headers, json payload) for a streamed call."""

    @abstractmethod
    def normalize_chunk(self, raw: dict[str, Any]) -> NormalizedChunk:
        """Map one provider chunk to text / tool-call data."""

    @abstractmethod
    def extract_usage(self, raw: dict[str, Any]) -> TokenUsage | None:
        """Usage numbers carried by a chunk, if any."""


def answered_call_ids(turns: list[Turn]) -> set[str]:
    """Call ids that have a tool result somewhere in ``turns``.

    Calls outside this set (e.g. left dangling by a cancelled turn) are
    omitted from wire history so a provider never sees an unpaired call.
    """
    return {result.call_id for turn in turns for result in turn.tool_results}

