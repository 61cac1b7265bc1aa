"""OpenRouter chat client over the OpenAI-compatible SDK."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI

from contactscout.config import settings

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class Completion:
    text: str
    model: str
    usage: Usage


def get_model() -> str:
    """Get the active OpenRouter model id."""
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


def _temperature_for_model(model: str) -> float:
    # Some GPT-5-compatible gateways reject temperature=0.
    if "gpt-5" in (model or "").lower():
        return 1
    return 0


class LLMClient:
    def __init__(self, openai_client: Any, model: str | None = None):
        self._client = openai_client
        self.model = model or get_model()

    @classmethod
    def from_settings(cls) -> "LLMClient":
        base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
        return cls(AsyncOpenAI(api_key=settings.openrouter_api_key, base_url=base_url))

    @property
    def configured(self) -> bool:
        return bool(getattr(self._client, "api_key", None))

    async def complete(self, *, system: str, user: str, max_tokens: int = 1024) -> Completion:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            max_tokens=max_tokens,
            temperature=_temperature_for_model(self.model),
        )
        choice = response.choices[0].message
        usage = getattr(response, "usage", None)
        return Completion(
            text=getattr(choice, "content", None) or "",
            model=self.model,
            usage=Usage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
        )

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()


def parse_json_array(text: str) -> list[Any]:
    """Pull the first JSON array out of a model reply, tolerating code fences."""
    cleaned = _FENCE.sub("", text.strip())
    start, end = cleaned.find("["), cleaned.rfind("]")
    if start == -1 or end <= start:
        raise ValueError("No JSON array in model response")
    payload = json.loads(cleaned[start : end + 1])
    if not isinstance(payload, list):
        raise ValueError("Model response is not a JSON array")
    return payload
