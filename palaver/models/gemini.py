"""Generative-language adapter (whole-call streaming).

Gemini streams complete ``functionCall`` parts, never fragments, and does
not assign call ids; the coordinator synthesizes them.  Tool results go
back as ``functionResponse`` parts matched by name and order, so
consecutive tool-result turns are grouped into one ``function`` content.
"""

from __future__ import annotations

import logging
from typing import Any

from palaver.conversation.schemas import ToolCallRequest, ToolSchema, Turn, TurnRole
from palaver.models.base import ChunkShape, ModelAdapter, NormalizedChunk, answered_call_ids
from palaver.services.usage import TokenUsage

logger = logging.getLogger(__name__)


class GeminiAdapter(ModelAdapter):
    kind = "gemini"
    provider = "gemini"
    chunk_shape = ChunkShape.WHOLE_CALL

    def system_text(self) -> str:
        p = self._personality
        text = "\n".join(part for part in (p.system_prompt, p.context) if part)
        if p.custom_instructions:
            text += f"\n\n--- Custom Instructions ---\n{p.custom_instructions}"
        return text.strip()

    def translate_history(self, turns: list[Turn]) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        answered = answered_call_ids(turns)

        for turn in turns:
            if turn.role == TurnRole.USER:
                contents.append({"role": "user", "parts": [{"text": turn.text}]})

            elif turn.role == TurnRole.MODEL:
                parts: list[dict[str, Any]] = []
                if turn.text:
                    parts.append({"text": turn.text})
                for call in turn.tool_calls:
                    if call.call_id in answered:
                        parts.append({"functionCall": {"name": call.name, "args": call.arguments}})
                if parts:
                    contents.append({"role": "model", "parts": parts})

            elif turn.role == TurnRole.TOOL_RESULT:
                parts = [
                    {"functionResponse": {"name": r.name, "response": r.result}}
                    for r in turn.tool_results
                ]
                if contents and contents[-1]["role"] == "function":
                    contents[-1]["parts"].extend(parts)
                else:
                    contents.append({"role": "function", "parts": parts})
        return contents

    def build_request(
        self, turns: list[Turn], tool_schemas: list[ToolSchema]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        generation_config: dict[str, Any] = {
            "temperature": self._settings.temperature,
            "topP": self._settings.top_p,
        }
        generation_config.update(self._personality.params)

        payload: dict[str, Any] = {
            "contents": self.translate_history(turns),
            "generationConfig": generation_config,
        }
        system_text = self.system_text()
        if system_text:
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}
        if tool_schemas:
            payload["tools"] = [{"functionDeclarations": [s.model_dump() for s in tool_schemas]}]
            payload["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}

        base = self._settings.gemini_base_url.rstrip("/")
        url = f"{base}/models/{self._model_name}:streamGenerateContent?alt=sse"
        headers = {
            "x-goog-api-key": self._api_key,
            "content-type": "application/json",
        }
        return url, headers, payload

    def normalize_chunk(self, raw: dict[str, Any]) -> NormalizedChunk:
        chunk = NormalizedChunk(usage=self.extract_usage(raw))
        candidates = raw.get("candidates") or []
        if not candidates:
            return chunk
        for part in (candidates[0].get("content") or {}).get("parts") or []:
            if "text" in part and not part.get("thought"):
                chunk.text += part["text"]
            call = part.get("functionCall")
            if call:
                chunk.tool_calls.append(ToolCallRequest(
                    call_id=call.get("id") or "",
                    name=call.get("name") or "",
                    arguments=call.get("args") or {},
                ))
        return chunk

    def extract_usage(self, raw: dict[str, Any]) -> TokenUsage | None:
        metadata = raw.get("usageMetadata")
        if not metadata:
            return None
        return TokenUsage(
            input=metadata.get("promptTokenCount", 0),
            output=metadata.get("candidatesTokenCount", 0),
        )
