"""
Integration interfaces: playback, tip generation and mood detection.

Implementations raise ``IntegrationError`` on failure; callers in the core
catch it and carry on without the update.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel

from ..models import MoodDetection, PlaybackState


class PlaybackSource(ABC):
    """Music playback provider."""

    @abstractmethod
    async def integration_enabled(self, pet_id: str) -> bool:
        ...

    @abstractmethod
    async def sync_playback(self, pet_id: str) -> PlaybackState | None:
        """Return the current playback, or None when it cannot be read."""
        ...


class NullPlaybackSource(PlaybackSource):
    """Playback source used when no music integration is configured."""

    async def integration_enabled(self, pet_id: str) -> bool:
        return False

    async def sync_playback(self, pet_id: str) -> PlaybackState | None:
        return None


class TipContext(BaseModel):
    """What the tip generator knows about the user, already formatted."""

    mood: str
    confidence: str
    room_temperature: str
    noise: str
    focus: str
    timer_method: str
    is_student: str


class TipGenerator(ABC):
    """Daily tip provider."""

    @abstractmethod
    async def generate(self, context: TipContext) -> str:
        ...


class MoodDetector(ABC):
    """Facial mood detection provider."""

    @abstractmethod
    async def detect(self, image: bytes) -> MoodDetection:
        ...
