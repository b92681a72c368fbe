"""
Periodic change detection.

State can change without a client message: the playback integration updates
what is playing and the daily tip goes stale. The poller re-derives each
pet's state on a fixed interval, compares it with the last broadcast snapshot
and broadcasts only the channels that actually changed, so idle ticks cost
the clients nothing.
"""

import asyncio
import contextlib
import logging

from pydantic import BaseModel

from .hub import ConnectionHub
from .models import DEFAULT_PET_ID
from .protocol import CAT_STATE, PREFS_STATE, STATS_STATE

logger = logging.getLogger(__name__)


class ChangePoller:
    """Re-derives state every ``interval`` seconds and pushes differences."""

    def __init__(
        self,
        hub: ConnectionHub,
        *,
        interval: float = 1.5,
        default_pet_id: str = DEFAULT_PET_ID,
    ) -> None:
        self._hub = hub
        self._interval = interval
        self._default_pet_id = default_pet_id
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="kori-poller")
        logger.info("Poller started (interval=%.2fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Poller stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.tick()

    async def tick(self) -> int:
        """
        Run one polling pass over every pet with live connections and the
        default pet.

        Returns:
            The number of channels broadcast during this pass
        """
        broadcasts = 0
        for pet_id in sorted(self._hub.pet_ids() | {self._default_pet_id}):
            try:
                broadcasts += await self.poll_pet(pet_id)
            except Exception:
                logger.exception(
                    "Poll failed for pet %s", pet_id, extra={"pet_id": pet_id}
                )
        return broadcasts

    async def poll_pet(self, pet_id: str) -> int:
        store = self._hub.store
        broadcasts = 0

        await self._prime(pet_id)
        await self._sync_playback(pet_id)

        if await self._publish_if_changed(pet_id, CAT_STATE, await store.get_pet(pet_id)):
            broadcasts += 1
        if await self._publish_if_changed(
            pet_id, PREFS_STATE, await store.get_preferences(pet_id)
        ):
            broadcasts += 1

        await self._hub.refresh_tip(pet_id)

        if await self._publish_if_changed(
            pet_id, STATS_STATE, await self._hub.stats_payload(pet_id)
        ):
            broadcasts += 1

        return broadcasts

    async def _sync_playback(self, pet_id: str) -> None:
        playback = self._hub.playback
        try:
            if not await playback.integration_enabled(pet_id):
                return
            state = await playback.sync_playback(pet_id)
            if state is None:
                return

            stats = await self._hub.store.get_stats(pet_id)
            if (
                stats.music_is_playing != state.is_playing
                or stats.music_track != state.track
            ):
                await self._hub.store.set_music_playback(
                    pet_id, state.is_playing, state.track
                )
                logger.debug(
                    "Playback changed for pet %s: %s",
                    pet_id,
                    state,
                    extra={"pet_id": pet_id},
                )
        except Exception:
            logger.exception(
                "Failed to sync playback for pet %s", pet_id, extra={"pet_id": pet_id}
            )

    async def _prime(self, pet_id: str) -> None:
        """Record the current state of channels that have no snapshot yet.

        Connections received this state when they opened, so it is not
        broadcast again.
        """
        store = self._hub.store
        if self._hub.snapshot(pet_id, CAT_STATE) is None:
            self._hub.remember(pet_id, CAT_STATE, await store.get_pet(pet_id))
        if self._hub.snapshot(pet_id, PREFS_STATE) is None:
            self._hub.remember(pet_id, PREFS_STATE, await store.get_preferences(pet_id))
        if self._hub.snapshot(pet_id, STATS_STATE) is None:
            self._hub.remember(pet_id, STATS_STATE, await self._hub.stats_payload(pet_id))

    async def _publish_if_changed(
        self, pet_id: str, channel: str, current: BaseModel
    ) -> bool:
        previous = self._hub.snapshot(pet_id, channel)
        # Field-wise comparison, nested confidence map included
        if previous == current:
            return False
        await self._hub.publish(pet_id, channel, current)
        return True
