"""
Shared data models for the Kori sync service.

This module defines the synchronized entities (pet state, preferences, stats),
the partial-update patches clients send for them, and the closed set of pet
animation states. The same models back the store, the WebSocket hub, the REST
routes and the client adapter, so every transport agrees on the wire shape.
"""

from datetime import datetime
from typing import Literal, get_args

from pydantic import BaseModel, ConfigDict, Field

AnimationState = Literal[
    "idle",
    "idle-alt",
    "sleep",
    "sleepy",
    "excited",
    "surprised",
    "sad",
    "waiting",
    "laydown",
    "shy",
    "dance",
    "sleeping",
    "sleeping-alt",
]

ANIMATION_STATES: tuple[str, ...] = get_args(AnimationState)

DEFAULT_PET_STATE: AnimationState = "idle"

TimerMethod = Literal["pomodoro", "custom", "focus"]

DEFAULT_PET_ID = "default"


def is_animation_state(value: object) -> bool:
    """Return True when value names a known animation state."""
    return isinstance(value, str) and value in ANIMATION_STATES


# MARK: - Entities


class PetState(BaseModel):
    """The animated pet's state."""

    mood: AnimationState = Field(DEFAULT_PET_STATE, description="Animation state")
    energy: int = Field(100, description="Energy level")
    hunger: int = Field(0, description="Hunger level")
    last_updated: datetime = Field(..., description="Time of the last mutation")


class Preferences(BaseModel):
    """User preferences shared by every front-end."""

    is_student: bool = False
    theme: str = "light"
    timer_method: TimerMethod = "pomodoro"
    last_updated: datetime


class Stats(BaseModel):
    """Raw sensor and mood-detection readings.

    ``mood`` is the external detector's label and is deliberately not checked
    against the animation states.
    """

    mood: str = "ok"
    room_temperature: float = 22.0
    focus_level: int = 5
    confidence: float | None = None
    noise_pollution: float = 0.0
    music_is_playing: bool = False
    music_track: str | None = None
    daily_tip: str | None = None
    tip_generated_at: datetime | None = None
    last_updated: datetime


class StatsPayload(Stats):
    """Outward-facing stats: raw stats merged with derived fields."""

    confidence: float = 0.0
    confidence_map: dict[str, float] = Field(default_factory=dict)
    spotify_connected: bool = False


class IntegrationTokens(BaseModel):
    """OAuth tokens held for the music playback integration."""

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: int | None = Field(None, description="Expiry as epoch milliseconds")
    token_type: str | None = None
    scope: str | None = None
    updated_at: datetime | None = None


class PlaybackState(BaseModel):
    """Current music playback as reported by the playback integration."""

    is_playing: bool
    track: str | None = None


class EmotionScore(BaseModel):
    label: str
    score: float


class MoodDetection(BaseModel):
    """Result of a mood detection call, best guess first."""

    top: EmotionScore
    all: list[EmotionScore]


# MARK: - Patches


class Patch(BaseModel):
    """Base class for partial updates.

    Only the fields a client actually sent are applied; unknown fields and
    values of the wrong type are rejected instead of coerced.
    """

    model_config = ConfigDict(extra="forbid", strict=True)

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True)


class PetPatch(Patch):
    # Mood stays a plain string here so the store can reject it with the
    # list of allowed states.
    mood: str | None = None
    energy: int | None = None
    hunger: int | None = None


class PreferencesPatch(Patch):
    is_student: bool | None = None
    theme: str | None = None
    timer_method: TimerMethod | None = None


class StatsPatch(Patch):
    mood: str | None = None
    room_temperature: float | None = None
    focus_level: int | None = None
    confidence: float | None = None
    noise_pollution: float | None = None
    music_is_playing: bool | None = None
    music_track: str | None = None
