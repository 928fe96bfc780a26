"""Short AI-generated chat titles.

One non-streaming chat-completions call with the first user message and
the first model reply.  Failures are logged and yield None; the caller
keeps the derived title.
"""

from __future__ import annotations

import logging

import httpx

from palaver.config import Settings

logger = logging.getLogger(__name__)

_TITLE_PROMPT = (
    "Based on the following first user message and first model response, "
    "generate a very concise title (5 words maximum) for this conversation. "
    "Respond with only the title, no quotes or punctuation at the end.\n\n"
    "User: {user}\n\nModel: {model}"
)
_MAX_INPUT_CHARS = 2000


class TitleGenerator:
    def __init__(self, settings: Settings, api_key: str, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._api_key = api_key
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        )

    async def generate(self, first_user_text: str, first_model_text: str) -> str | None:
        payload = {
            "model": self._settings.title_model,
            "messages": [{
                "role": "user",
                "content": _TITLE_PROMPT.format(
                    user=first_user_text[:_MAX_INPUT_CHARS],
                    model=first_model_text[:_MAX_INPUT_CHARS],
                ),
            }],
            "temperature": 0.5,
            "max_tokens": 20,
        }
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        try:
            response = await self._http.post(
                url, json=payload, headers={"authorization": f"Bearer {self._api_key}"}
            )
            response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"] or ""
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            logger.warning("Title generation failed: %s", e)
            return None

        title = content.strip().strip("\"'").strip()
        return title or None

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
