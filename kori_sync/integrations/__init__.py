"""
External integrations used by the sync core.

Each integration sits behind one of the narrow interfaces in ``base`` so the
hub and the poller never depend on a concrete transport.
"""

from .base import (
    MoodDetector,
    NullPlaybackSource,
    PlaybackSource,
    TipContext,
    TipGenerator,
)

__all__ = [
    "MoodDetector",
    "NullPlaybackSource",
    "PlaybackSource",
    "TipContext",
    "TipGenerator",
]
