"""
Outward-facing stats payload.
"""

from .integrations.base import PlaybackSource
from .models import StatsPayload
from .store import StateStore


async def build_stats_payload(
    store: StateStore, pet_id: str, playback: PlaybackSource
) -> StatsPayload:
    """
    Merge raw stats, the mood confidence map and the integration status.

    ``confidence`` is the stats value when one is set, otherwise the map's
    entry for the current stats mood, otherwise 0. Only reads; call it fresh
    for every response so the payload is never older than the request.
    """
    stats = await store.get_stats(pet_id)
    confidence_map = await store.get_confidence_map(pet_id)

    if stats.confidence is not None:
        confidence = stats.confidence
    else:
        confidence = confidence_map.get(stats.mood, 0.0)

    return StatsPayload(
        **stats.model_dump(exclude={"confidence"}),
        confidence=confidence,
        confidence_map=confidence_map,
        spotify_connected=await playback.integration_enabled(pet_id),
    )
