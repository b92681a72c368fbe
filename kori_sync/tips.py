"""
Daily tip refresh.

A tip is regenerated when none exists, when the stored one dates from an
earlier calendar day, or when it is older than ``TIP_MAX_AGE``. Generation
goes through the injected ``TipGenerator``; whenever that is missing, fails,
or returns nothing, a tip is composed locally from the current stats so the
UI is never left without one.
"""

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta

from .errors import IntegrationError
from .integrations.base import TipContext, TipGenerator
from .models import Preferences, Stats
from .store import StateStore, utcnow

logger = logging.getLogger(__name__)

TIP_MAX_AGE = timedelta(hours=4)


def should_refresh_tip(last_generated_at: datetime | None, now: datetime) -> bool:
    if last_generated_at is None:
        return True
    if last_generated_at.date() != now.date():
        return True
    return now - last_generated_at > TIP_MAX_AGE


def _title_case(value: str) -> str:
    return value[:1].upper() + value[1:]


def _lower_first(value: str) -> str:
    return value[:1].lower() + value[1:]


def build_fallback_tip(stats: Stats, prefs: Preferences) -> str:
    """Compose a short tip from the current readings without any service."""
    mood = stats.mood.lower() if stats.mood else "steady"

    suggestions: list[str] = []

    if stats.focus_level >= 0:
        if stats.focus_level <= 3:
            suggestions.append(
                "Take a two-minute reset and breathe deeply before the next block"
            )
        elif stats.focus_level >= 7:
            suggestions.append(
                "Capture the next task in your notes so the momentum keeps rolling"
            )
        else:
            suggestions.append(
                "Set a gentle timer for your next focus sprint to stay present"
            )

    if stats.room_temperature >= 26:
        suggestions.append("Cool the room or sip water to stay comfortable")
    elif stats.room_temperature <= 19:
        suggestions.append("Add a light layer or warm drink to stay cozy")

    if stats.noise_pollution >= 55:
        suggestions.append("Use headphones or white noise to soften the background")

    if prefs.is_student:
        suggestions.append("Lean on your study timer to keep the rhythm strong")

    primary = (
        suggestions[0]
        if suggestions
        else "Take a short stretch and refocus before you dive back in"
    )
    secondary = suggestions[1] if len(suggestions) > 1 else None

    if secondary:
        guidance = f"{_title_case(primary)}, and {_lower_first(secondary)}."
    else:
        guidance = f"{_title_case(primary)}."

    tip = f"Mood reads {_title_case(mood)}. {guidance}"
    return re.sub(r"\s+", " ", tip).strip()


def build_tip_context(stats: Stats, prefs: Preferences) -> TipContext:
    return TipContext(
        mood=stats.mood or "balanced",
        confidence=f"{stats.confidence:.2f}" if stats.confidence is not None else "unknown",
        room_temperature=str(stats.room_temperature),
        noise=f"{stats.noise_pollution:.2f}",
        focus=str(stats.focus_level),
        timer_method=prefs.timer_method,
        is_student="yes" if prefs.is_student else "no",
    )


class TipService:
    """Keeps each pet's daily tip fresh."""

    def __init__(
        self,
        store: StateStore,
        generator: TipGenerator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._generator = generator
        self._clock = clock

    async def maybe_generate(self, pet_id: str) -> str:
        """
        Return the pet's current tip, regenerating it when stale.

        Args:
            pet_id: Tenant key of the pet

        Returns:
            The tip now stored for the pet
        """
        stats = await self._store.get_stats(pet_id)
        prefs = await self._store.get_preferences(pet_id)

        if stats.daily_tip and not should_refresh_tip(
            stats.tip_generated_at, self._clock()
        ):
            return stats.daily_tip

        tip = None
        if self._generator is not None:
            try:
                tip = (await self._generator.generate(build_tip_context(stats, prefs))).strip()
            except IntegrationError as e:
                logger.warning("Falling back to local tip: %s", e)
            except Exception:
                logger.exception(
                    "Tip generator failed for pet %s; falling back to local tip",
                    pet_id,
                    extra={"pet_id": pet_id},
                )

        if not tip:
            tip = build_fallback_tip(stats, prefs)

        await self._store.set_daily_tip(pet_id, tip, self._clock())
        logger.info("Refreshed daily tip for pet %s", pet_id)
        return tip
