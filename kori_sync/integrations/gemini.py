"""
Daily tip generation through the Gemini REST API.
"""

from __future__ import annotations

import logging

import httpx

from ..errors import IntegrationError
from .base import TipContext, TipGenerator

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

PROMPT_TEMPLATE = """You are a concise study companion. Using the context below, provide one actionable tip (at most two sentences) that helps the user stay focused or take care of their wellbeing.

Context:
- Mood: {mood}
- Confidence Score: {confidence}
- Room Temperature (C): {room_temperature}
- Noise Level (0-1): {noise}
- Focus Level (0-10): {focus}
- Timer Method: {timer_method}
- Student Mode Enabled: {is_student}

Avoid filler language and keep the tone encouraging."""


class GeminiTipGenerator(TipGenerator):
    """Generates tips with a Gemini model.

    An ``httpx.AsyncClient`` may be injected; otherwise one is opened per call.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        *,
        timeout: float = 10.0,
        temperature: float = 0.35,
        max_output_tokens: int = 160,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._client = client

    async def generate(self, context: TipContext) -> str:
        body = {
            "contents": [
                {"parts": [{"text": PROMPT_TEMPLATE.format(**context.model_dump())}]}
            ],
            "generationConfig": {
                "temperature": self._temperature,
                "maxOutputTokens": self._max_output_tokens,
            },
        }
        url = f"{GEMINI_BASE_URL}/models/{self._model}:generateContent"
        headers = {"x-goog-api-key": self._api_key}

        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=body, headers=headers)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise IntegrationError(f"Gemini request failed: {e}") from e

        return _extract_text(data)


def _extract_text(data: dict) -> str:
    try:
        parts = data["candidates"][0]["content"]["parts"]
        texts = [part.get("text", "") for part in parts]
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        raise IntegrationError(f"Unexpected Gemini response: {data!r}") from e
    if not all(isinstance(text, str) for text in texts):
        raise IntegrationError(f"Unexpected Gemini response: {data!r}")
    return "".join(texts).strip()
