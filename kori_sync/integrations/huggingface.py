"""
Facial mood detection through the Hugging Face inference API.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..errors import IntegrationError
from ..models import EmotionScore, MoodDetection
from .base import MoodDetector

logger = logging.getLogger(__name__)


class HuggingFaceMoodDetector(MoodDetector):
    """Classifies a face image with an image-classification model."""

    def __init__(
        self,
        token: str | None,
        *,
        model_id: str = "prithivMLmods/Facial-Emotion-Detection-SigLIP2",
        base_url: str = "https://router.huggingface.co/hf-inference",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token:
            logger.warning("HF token is missing; mood detection will not work")
        self._token = token
        self._url = f"{base_url.rstrip('/')}/models/{model_id}"
        self._timeout = timeout
        self._client = client

    async def detect(self, image: bytes) -> MoodDetection:
        if not self._token:
            raise IntegrationError("Missing HF token")
        if not image:
            raise IntegrationError("Image payload is empty")

        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/octet-stream",
        }
        try:
            if self._client is not None:
                response = await self._client.post(
                    self._url, content=image, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(
                        self._url, content=image, headers=headers
                    )
        except httpx.HTTPError as e:
            raise IntegrationError(f"HF request failed: {e}") from e

        if response.is_error:
            raise IntegrationError(
                f"HF API error {response.status_code}: {response.text}"
            )

        try:
            scores = [EmotionScore.model_validate(s) for s in _flatten(response.json())]
        except (ValueError, PydanticValidationError) as e:
            raise IntegrationError(f"Unexpected HF response: {e}") from e

        if not scores:
            raise IntegrationError("No predictions returned")

        scores.sort(key=lambda s: s.score, reverse=True)
        return MoodDetection(top=scores[0], all=scores)


def _flatten(payload: Any) -> list[Any]:
    """The API returns either a list of scores or a list holding one."""
    if not isinstance(payload, list):
        raise ValueError(f"expected a list, got {type(payload).__name__}")
    if payload and isinstance(payload[0], list):
        return list(payload[0])
    return list(payload)
