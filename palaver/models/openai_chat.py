"""Chat-completions adapters (incremental delta streaming).

Covers the ``gpt`` family and the ``openai-reasoning`` family.  The two
share a message format; the reasoning family puts the system text in a
``developer`` message and takes ``reasoning_effort`` instead of sampling
parameters.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from palaver.conversation.schemas import ToolSchema, Turn, TurnRole
from palaver.models.base import (
    CallFragment,
    ChunkShape,
    ModelAdapter,
    NormalizedChunk,
    answered_call_ids,
)
from palaver.services.usage import TokenUsage

logger = logging.getLogger(__name__)

# Default sampling for the gpt family; personality params override.
_SAMPLING_DEFAULTS: dict[str, float] = {
    "frequency_penalty": 0.2,
    "presence_penalty": 0.4,
}


class OpenAIChatAdapter(ModelAdapter):
    kind = "gpt"
    provider = "openai"
    chunk_shape = ChunkShape.DELTA

    system_role = "system"

    def system_text(self) -> str:
        """USER CONTEXT / SYSTEM PROMPT layout, custom instructions last."""
        p = self._personality
        parts: list[str] = []
        if p.context:
            parts.append(f"USER CONTEXT:\n{p.context}")
        if p.system_prompt:
            parts.append(f"SYSTEM PROMPT:\n{p.system_prompt}")
        text = "\n\n".join(parts)
        if p.custom_instructions:
            text += f"\n\n--- Custom Instructions ---\n{p.custom_instructions}"
        return text.strip()

    def translate_history(self, turns: list[Turn]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        system_text = self.system_text()
        if system_text:
            messages.append({"role": self.system_role, "content": system_text})

        answered = answered_call_ids(turns)
        for turn in turns:
            if turn.role == TurnRole.USER:
                messages.append({"role": "user", "content": turn.text})

            elif turn.role == TurnRole.MODEL:
                calls = [c for c in turn.tool_calls if c.call_id in answered]
                text = turn.text
                if not text and not calls:
                    continue
                message: dict[str, Any] = {"role": "assistant", "content": text or None}
                if calls:
                    message["tool_calls"] = [
                        {
                            "id": c.call_id,
                            "type": "function",
                            "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
                        }
                        for c in calls
                    ]
                messages.append(message)

            elif turn.role == TurnRole.TOOL_RESULT:
                for result in turn.tool_results:
                    messages.append({
                        "role": "tool",
                        "tool_call_id": result.call_id,
                        "content": json.dumps(result.result),
                    })
        return messages

    def generation_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "temperature": self._settings.temperature,
            "top_p": self._settings.top_p,
            **_SAMPLING_DEFAULTS,
        }
        params.update(self._personality.params)
        return params

    def build_request(
        self, turns: list[Turn], tool_schemas: list[ToolSchema]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        payload: dict[str, Any] = {
            "model": self._model_name,
            "messages": self.translate_history(turns),
            "stream": True,
            "stream_options": {"include_usage": True},
            **self.generation_params(),
        }
        if tool_schemas:
            payload["tools"] = [
                {"type": "function", "function": schema.model_dump()} for schema in tool_schemas
            ]
            payload["tool_choice"] = "auto"

        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        headers = {
            "authorization": f"Bearer {self._api_key}",
            "content-type": "application/json",
        }
        return url, headers, payload

    def normalize_chunk(self, raw: dict[str, Any]) -> NormalizedChunk:
        chunk = NormalizedChunk(usage=self.extract_usage(raw))
        for choice in raw.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                chunk.text += delta["content"]
            for tc in delta.get("tool_calls") or []:
                function = tc.get("function") or {}
                chunk.fragments.append(CallFragment(
                    index=tc.get("index", 0),
                    call_id=tc.get("id") or "",
                    name=function.get("name") or "",
                    arguments=function.get("arguments") or "",
                ))
        return chunk

    def extract_usage(self, raw: dict[str, Any]) -> TokenUsage | None:
        usage = raw.get("usage")
        if not usage:
            return None
        return TokenUsage(
            input=usage.get("prompt_tokens", 0),
            output=usage.get("completion_tokens", 0),
        )


class OpenAIReasoningAdapter(OpenAIChatAdapter):
    """Reasoning models: developer-role system text, no sampling knobs."""

    kind = "openai-reasoning"
    system_role = "developer"

    def generation_params(self) -> dict[str, Any]:
        effort = self._personality.params.get("reasoning_effort", self._settings.reasoning_effort)
        return {"reasoning_effort": effort}
