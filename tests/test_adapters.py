"""Tests for model adapters: history translation, chunk normalization, SSE transport."""

import json

import httpx
import pytest

from palaver.conversation.schemas import ToolCallSegment, ToolSchema, Turn
from palaver.errors import ConfigurationError, TransportError
from palaver.models.base import ChunkShape, PersonalityContext, resolve_api_key
from palaver.models.factory import create_adapter
from palaver.models.gemini import GeminiAdapter
from palaver.models.openai_chat import OpenAIChatAdapter, OpenAIReasoningAdapter
from palaver.services.settings_provider import AppConfig, ConfigFile

PERSONALITY = PersonalityContext(
    system_prompt="You are helpful.",
    context="User lives in Lisbon.",
    custom_instructions="Answer briefly.",
)

TIMER_SCHEMA = ToolSchema(
    name="start_timer",
    description="Start a timer",
    parameters={"type": "object", "properties": {"duration_seconds": {"type": "integer"}}},
)


def _history_with_tools() -> list[Turn]:
    return [
        Turn.for_user("Set a 30s timer"),
        Turn.for_model("On it.", [ToolCallSegment(call_id="call_1", name="start_timer", arguments={"duration_seconds": 30})]),
        Turn.for_tool_result("call_1", "start_timer", {"success": True}),
    ]


def _sse_body(chunks: list[dict], done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def _adapter(cls, settings, handler=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    adapter = cls(settings, http=http)
    adapter.initialize("sk-test", "test-model", PERSONALITY)
    return adapter


# ---------------------------------------------------------------------------
# Initialization and key lookup
# ---------------------------------------------------------------------------


class TestInitialization:
    def test_empty_key_rejected(self, settings):
        with pytest.raises(ConfigurationError):
            OpenAIChatAdapter(settings).initialize("", "gpt-4o", PERSONALITY)

    def test_factory_families(self, settings):
        assert isinstance(create_adapter("gpt", settings), OpenAIChatAdapter)
        assert isinstance(create_adapter("openai-reasoning", settings), OpenAIReasoningAdapter)
        assert isinstance(create_adapter("gemini", settings), GeminiAdapter)
        with pytest.raises(ConfigurationError):
            create_adapter("claude", settings)

    def test_chunk_shapes(self):
        assert OpenAIChatAdapter.chunk_shape == ChunkShape.DELTA
        assert OpenAIReasoningAdapter.chunk_shape == ChunkShape.DELTA
        assert GeminiAdapter.chunk_shape == ChunkShape.WHOLE_CALL

    def test_config_key_wins_over_env(self, settings):
        config = ConfigFile(AppConfig(api_keys={"openai": "sk-from-config"}))
        assert resolve_api_key("openai", config, settings) == "sk-from-config"

    def test_env_fallback(self, settings):
        config = ConfigFile(AppConfig())
        assert resolve_api_key("gemini", config, settings) == "gm-test"

    def test_missing_key(self):
        from palaver.config import Settings

        bare = Settings(_env_file=None, OPENAI_API_KEY="", GEMINI_API_KEY="")
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            resolve_api_key("openai", ConfigFile(AppConfig()), bare)


# ---------------------------------------------------------------------------
# Chat-completions translation
# ---------------------------------------------------------------------------


class TestOpenAITranslation:
    def test_system_message_layout(self, settings):
        adapter = _adapter(OpenAIChatAdapter, settings)
        messages = adapter.translate_history([Turn.for_user("hi")])
        assert messages[0]["role"] == "system"
        assert messages[0]["content"] == (
            "USER CONTEXT:\nUser lives in Lisbon.\n\nSYSTEM PROMPT:\nYou are helpful."
            "\n\n--- Custom Instructions ---\nAnswer briefly."
        )
        assert messages[1] == {"role": "user", "content": "hi"}

    def test_tool_calls_and_results(self, settings):
        adapter = _adapter(OpenAIChatAdapter, settings)
        messages = adapter.translate_history(_history_with_tools())[1:]
        assert messages[1]["role"] == "assistant"
        assert messages[1]["content"] == "On it."
        call = messages[1]["tool_calls"][0]
        assert call["id"] == "call_1"
        assert call["function"]["name"] == "start_timer"
        assert json.loads(call["function"]["arguments"]) == {"duration_seconds": 30}
        assert messages[2] == {"role": "tool", "tool_call_id": "call_1", "content": json.dumps({"success": True})}

    def test_unanswered_calls_omitted(self, settings):
        adapter = _adapter(OpenAIChatAdapter, settings)
        turns = [
            Turn.for_user("timer"),
            Turn.for_model("", [ToolCallSegment(call_id="call_x", name="start_timer")]),
            Turn.for_user("never mind"),
        ]
        messages = adapter.translate_history(turns)[1:]
        assert [m["role"] for m in messages] == ["user", "user"]

    def test_reasoning_uses_developer_role(self, settings):
        adapter = _adapter(OpenAIReasoningAdapter, settings)
        _, _, payload = adapter.build_request([Turn.for_user("hi")], [])
        assert payload["messages"][0]["role"] == "developer"
        assert payload["reasoning_effort"] == "medium"
        assert "temperature" not in payload

    def test_request_payload(self, settings):
        adapter = _adapter(OpenAIChatAdapter, settings)
        url, headers, payload = adapter.build_request([Turn.for_user("hi")], [TIMER_SCHEMA])
        assert url == "https://api.openai.com/v1/chat/completions"
        assert headers["authorization"] == "Bearer sk-test"
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}
        assert payload["tools"][0] == {"type": "function", "function": TIMER_SCHEMA.model_dump()}
        assert payload["tool_choice"] == "auto"
        assert payload["temperature"] == 0.7


class TestOpenAINormalize:
    def test_text_delta(self, settings):
        adapter = _adapter(OpenAIChatAdapter, settings)
        chunk = adapter.normalize_chunk({"choices": [{"index": 0, "delta": {"content": "Hel"}}]})
        assert chunk.text == "Hel"
        assert chunk.fragments == []

    def test_tool_fragment(self, settings):
        adapter = _adapter(OpenAIChatAdapter, settings)
        raw = {"choices": [{"index": 0, "delta": {"tool_calls": [
            {"index": 1, "id": "call_9", "function": {"name": "start_", "arguments": '{"dur'}},
        ]}}]}
        fragment = adapter.normalize_chunk(raw).fragments[0]
        assert (fragment.index, fragment.call_id, fragment.name, fragment.arguments) == (1, "call_9", "start_", '{"dur')

    def test_usage(self, settings):
        adapter = _adapter(OpenAIChatAdapter, settings)
        chunk = adapter.normalize_chunk({"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 5}})
        assert chunk.usage.input == 12
        assert chunk.usage.output == 5


# ---------------------------------------------------------------------------
# Gemini translation
# ---------------------------------------------------------------------------


class TestGeminiTranslation:
    def test_system_instruction(self, settings):
        adapter = _adapter(GeminiAdapter, settings)
        url, headers, payload = adapter.build_request([Turn.for_user("hi")], [TIMER_SCHEMA])
        assert url.endswith("/models/test-model:streamGenerateContent?alt=sse")
        assert headers["x-goog-api-key"] == "sk-test"
        assert payload["systemInstruction"]["parts"][0]["text"].startswith(
            "You are helpful.\nUser lives in Lisbon."
        )
        assert payload["tools"][0]["functionDeclarations"][0]["name"] == "start_timer"
        assert payload["toolConfig"] == {"functionCallingConfig": {"mode": "AUTO"}}
        assert payload["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]

    def test_function_call_and_response(self, settings):
        adapter = _adapter(GeminiAdapter, settings)
        contents = adapter.translate_history(_history_with_tools())
        assert contents[1] == {
            "role": "model",
            "parts": [
                {"text": "On it."},
                {"functionCall": {"name": "start_timer", "args": {"duration_seconds": 30}}},
            ],
        }
        assert contents[2] == {
            "role": "function",
            "parts": [{"functionResponse": {"name": "start_timer", "response": {"success": True}}}],
        }

    def test_consecutive_results_grouped(self, settings):
        adapter = _adapter(GeminiAdapter, settings)
        turns = [
            Turn.for_user("two things"),
            Turn.for_model("", [
                ToolCallSegment(call_id="a", name="make_note", arguments={"note": "x"}),
                ToolCallSegment(call_id="b", name="start_timer", arguments={"duration_seconds": 5}),
            ]),
            Turn.for_tool_result("a", "make_note", {"success": True}),
            Turn.for_tool_result("b", "start_timer", {"success": True}),
        ]
        contents = adapter.translate_history(turns)
        assert len(contents) == 3
        assert len(contents[2]["parts"]) == 2

    def test_normalize_whole_call(self, settings):
        adapter = _adapter(GeminiAdapter, settings)
        chunk = adapter.normalize_chunk({
            "candidates": [{"content": {"parts": [
                {"text": "Setting it"},
                {"functionCall": {"name": "start_timer", "args": {"duration_seconds": 30}}},
            ]}}],
            "usageMetadata": {"promptTokenCount": 40, "candidatesTokenCount": 8},
        })
        assert chunk.text == "Setting it"
        assert chunk.tool_calls[0].name == "start_timer"
        assert chunk.tool_calls[0].call_id == ""
        assert chunk.tool_calls[0].arguments == {"duration_seconds": 30}
        assert (chunk.usage.input, chunk.usage.output) == (40, 8)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class TestTransport:
    @pytest.mark.asyncio
    async def test_streams_chunks_and_usage(self, settings):
        chunks = [
            {"choices": [{"index": 0, "delta": {"content": "Hi"}}]},
            {"choices": [{"index": 0, "delta": {"content": " there"}}]},
            {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 2}},
        ]
        seen_payloads = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_payloads.append(json.loads(request.content))
            return httpx.Response(200, content=_sse_body(chunks), headers={"content-type": "text/event-stream"})

        adapter = _adapter(OpenAIChatAdapter, settings, handler)
        handle = await adapter.send_turn([], Turn.for_user("hello"), [])
        assert handle.final() is None

        received = [raw async for raw in handle]
        assert received == chunks
        usage = handle.final()
        assert (usage.input, usage.output) == (10, 2)
        assert seen_payloads[0]["messages"][-1] == {"role": "user", "content": "hello"}

    @pytest.mark.asyncio
    async def test_non_2xx_raises_transport_error(self, settings):
        def handler(request):
            return httpx.Response(401, json={"error": {"message": "bad key"}})

        adapter = _adapter(OpenAIChatAdapter, settings, handler)
        with pytest.raises(TransportError) as exc_info:
            await adapter.send_turn([Turn.for_user("hi")], None, [])
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_network_error_raises_transport_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        adapter = _adapter(GeminiAdapter, settings, handler)
        with pytest.raises(TransportError):
            await adapter.send_turn([Turn.for_user("hi")], None, [])

    @pytest.mark.asyncio
    async def test_in_stream_error(self, settings):
        body = _sse_body([{"choices": [{"index": 0, "delta": {"content": "Hi"}}]}, {"error": {"message": "overloaded"}}])

        def handler(request):
            return httpx.Response(200, content=body)

        adapter = _adapter(OpenAIChatAdapter, settings, handler)
        handle = await adapter.send_turn([Turn.for_user("hi")], None, [])
        with pytest.raises(TransportError, match="overloaded"):
            async for _ in handle:
                pass

    @pytest.mark.asyncio
    async def test_malformed_chunk(self, settings):
        def handler(request):
            return httpx.Response(200, content=b"data: {not json\n\n")

        adapter = _adapter(GeminiAdapter, settings, handler)
        handle = await adapter.send_turn([Turn.for_user("hi")], None, [])
        with pytest.raises(TransportError, match="Malformed"):
            async for _ in handle:
                pass

    @pytest.mark.asyncio
    async def test_gemini_stream_without_done_marker(self, settings):
        chunks = [{"candidates": [{"content": {"parts": [{"text": "Olá"}]}}]}]

        def handler(request):
            assert request.url.params["alt"] == "sse"
            return httpx.Response(200, content=_sse_body(chunks, done=False))

        adapter = _adapter(GeminiAdapter, settings, handler)
        handle = await adapter.send_turn([Turn.for_user("hi")], None, [])
        received = [adapter.normalize_chunk(raw).text async for raw in handle]
        assert received == ["Olá"]

    @pytest.mark.asyncio
    async def test_uninitialized_adapter(self, settings):
        with pytest.raises(ConfigurationError):
            await OpenAIChatAdapter(settings).send_turn([], Turn.for_user("hi"), [])
