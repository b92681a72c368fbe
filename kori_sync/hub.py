"""
Connection hub for the Kori sync service.

The hub tracks the live connections of every pet, dispatches inbound client
messages to store operations and fans the resulting entities out to all of
that pet's connections, the sender included. It also remembers the last
payload broadcast on each channel; the poller compares against these
snapshots so a change is pushed exactly once whichever side caused it.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from .connections import Connection
from .derived import build_stats_payload
from .errors import StoreError, TransportError, ValidationError
from .integrations.base import NullPlaybackSource, PlaybackSource
from .models import (
    PetPatch,
    PetState,
    Preferences,
    PreferencesPatch,
    StatsPatch,
    StatsPayload,
)
from .protocol import (
    CAT_STATE,
    ERROR,
    PONG,
    PREFS_STATE,
    STATS_STATE,
    CatGet,
    CatUpdate,
    ClientMessage,
    Ping,
    PrefsGet,
    PrefsUpdate,
    StatsGet,
    StatsUpdate,
    encode,
    parse_client_message,
)
from .store import StateStore
from .tips import TipService

logger = logging.getLogger(__name__)


class ConnectionHub:
    """
    Fan-out hub shared by every transport.

    Messages are handled one at a time on the event loop, so a store update
    and the broadcast that follows it never interleave with another client's
    update of the same entity.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        playback: PlaybackSource | None = None,
        tips: TipService | None = None,
    ) -> None:
        self._store = store
        self._playback = playback or NullPlaybackSource()
        self._tips = tips
        self._connections: dict[str, set[Connection]] = {}
        self._snapshots: dict[tuple[str, str], BaseModel] = {}
        self._handlers: dict[
            type, Callable[[Connection, Any], Awaitable[None]]
        ] = {
            Ping: self._on_ping,
            CatGet: self._on_cat_get,
            CatUpdate: self._on_cat_update,
            PrefsGet: self._on_prefs_get,
            PrefsUpdate: self._on_prefs_update,
            StatsGet: self._on_stats_get,
            StatsUpdate: self._on_stats_update,
        }

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def playback(self) -> PlaybackSource:
        return self._playback

    @property
    def tips(self) -> TipService | None:
        return self._tips

    # MARK: - Connections

    def pet_ids(self) -> set[str]:
        """Pets that currently have at least one connection."""
        return {pet_id for pet_id, conns in self._connections.items() if conns}

    def connection_count(self, pet_id: str | None = None) -> int:
        if pet_id is not None:
            return len(self._connections.get(pet_id, ()))
        return sum(len(conns) for conns in self._connections.values())

    async def connect(self, conn: Connection) -> None:
        """
        Register an open connection and send it the full current state.

        The connection receives ``cat:state``, ``prefs:state`` and
        ``stats:state`` in that order before anything else.
        """
        self._connections.setdefault(conn.pet_id, set()).add(conn)
        logger.info(
            "Client connected: %s (%d live)",
            conn,
            self.connection_count(conn.pet_id),
            extra=_log_context(conn),
        )

        await self.send(conn, CAT_STATE, await self._store.get_pet(conn.pet_id))
        await self.send(
            conn, PREFS_STATE, await self._store.get_preferences(conn.pet_id)
        )
        await self.send(conn, STATS_STATE, await self.stats_payload(conn.pet_id))

    def disconnect(self, conn: Connection) -> None:
        conns = self._connections.get(conn.pet_id)
        if conns is None or conn not in conns:
            return
        conns.discard(conn)
        if not conns:
            del self._connections[conn.pet_id]
        logger.info("Client disconnected: %s", conn, extra=_log_context(conn))

    # MARK: - Inbound

    async def handle_text(self, conn: Connection, raw: str | bytes) -> None:
        """
        Handle one raw inbound message from a connection.

        Protocol errors are answered with an ``error`` message to this
        connection only. A store failure is logged and the message dropped.
        """
        try:
            message = parse_client_message(raw)
        except TransportError as e:
            logger.debug(
                "Rejected message from %s: %s", conn, e, extra=_log_context(conn)
            )
            await self.send(conn, ERROR, str(e))
            return

        try:
            await self.dispatch(conn, message)
        except StoreError:
            logger.exception(
                "Store failure while handling %s",
                message.type,
                extra=_log_context(conn, message_type=message.type),
            )

    async def dispatch(self, conn: Connection, message: ClientMessage) -> None:
        handler = self._handlers[type(message)]
        await handler(conn, message)

    async def _on_ping(self, conn: Connection, message: Ping) -> None:
        await self.send(conn, PONG)

    async def _on_cat_get(self, conn: Connection, message: CatGet) -> None:
        await self.send(conn, CAT_STATE, await self._store.get_pet(conn.pet_id))

    async def _on_cat_update(self, conn: Connection, message: CatUpdate) -> None:
        try:
            await self.update_pet(conn.pet_id, message.payload)
        except ValidationError as e:
            await self.send(conn, ERROR, str(e))

    async def _on_prefs_get(self, conn: Connection, message: PrefsGet) -> None:
        await self.send(
            conn, PREFS_STATE, await self._store.get_preferences(conn.pet_id)
        )

    async def _on_prefs_update(self, conn: Connection, message: PrefsUpdate) -> None:
        await self.update_preferences(conn.pet_id, message.payload)

    async def _on_stats_get(self, conn: Connection, message: StatsGet) -> None:
        await self.send(conn, STATS_STATE, await self.stats_payload(conn.pet_id))

    async def _on_stats_update(self, conn: Connection, message: StatsUpdate) -> None:
        await self.update_stats(conn.pet_id, message.payload)

    # MARK: - Updates

    async def update_pet(self, pet_id: str, patch: PetPatch) -> PetState:
        """Apply a pet patch and broadcast the result. Raises ValidationError."""
        pet = await self._store.update_pet(pet_id, patch)
        await self.publish(pet_id, CAT_STATE, pet)
        return pet

    async def update_preferences(
        self, pet_id: str, patch: PreferencesPatch
    ) -> Preferences:
        prefs = await self._store.update_preferences(pet_id, patch)
        await self.publish(pet_id, PREFS_STATE, prefs)
        return prefs

    async def update_stats(self, pet_id: str, patch: StatsPatch) -> StatsPayload:
        """
        Apply a stats patch and broadcast the rebuilt stats payload.

        A patch that sets ``mood`` or ``confidence`` refreshes the daily tip
        first; a failing refresh never fails the update.
        """
        await self._store.update_stats(pet_id, patch)

        changes = patch.changes()
        if changes.get("mood") is not None or changes.get("confidence") is not None:
            await self.refresh_tip(pet_id)

        payload = await self.stats_payload(pet_id)
        await self.publish(pet_id, STATS_STATE, payload)
        return payload

    async def refresh_tip(self, pet_id: str) -> None:
        if self._tips is None:
            return
        try:
            await self._tips.maybe_generate(pet_id)
        except Exception:
            logger.exception(
                "Failed to generate tip for pet %s", pet_id, extra={"pet_id": pet_id}
            )

    # MARK: - State

    async def stats_payload(self, pet_id: str) -> StatsPayload:
        return await build_stats_payload(self._store, pet_id, self._playback)

    async def full_state(self, pet_id: str) -> dict[str, BaseModel]:
        """The three entities as served by the polling endpoint."""
        return {
            "cat": await self._store.get_pet(pet_id),
            "prefs": await self._store.get_preferences(pet_id),
            "stats": await self.stats_payload(pet_id),
        }

    def snapshot(self, pet_id: str, channel: str) -> BaseModel | None:
        """The last payload broadcast on a channel, if any."""
        return self._snapshots.get((pet_id, channel))

    def remember(self, pet_id: str, channel: str, payload: BaseModel) -> None:
        self._snapshots[(pet_id, channel)] = payload

    # MARK: - Outbound

    async def publish(self, pet_id: str, channel: str, payload: BaseModel) -> None:
        """Broadcast an entity and record it as the channel's snapshot."""
        self.remember(pet_id, channel, payload)
        await self.broadcast(pet_id, channel, payload)

    async def broadcast(
        self, pet_id: str, message_type: str, payload: Any = None
    ) -> int:
        """
        Send a message to every open connection of a pet.

        Returns:
            The number of connections the message was delivered to
        """
        text = encode(message_type, payload)
        delivered = 0
        for conn in list(self._connections.get(pet_id, ())):
            if await self._send_text(conn, text):
                delivered += 1
        logger.debug(
            "Broadcast %s to %d connection(s)",
            message_type,
            delivered,
            extra={"pet_id": pet_id, "channel": message_type},
        )
        return delivered

    async def send(
        self, conn: Connection, message_type: str, payload: Any = None
    ) -> bool:
        return await self._send_text(conn, encode(message_type, payload))

    async def close_all(self) -> None:
        for pet_id in list(self._connections):
            for conn in list(self._connections.get(pet_id, ())):
                conn.close()
                self.disconnect(conn)

    async def _send_text(self, conn: Connection, text: str) -> bool:
        if not conn.is_open:
            return False
        try:
            await conn.send_text(text)
        except Exception as e:
            # The peer went away between the open check and the write
            logger.debug(
                "Dropping %s after failed send: %s", conn, e, extra=_log_context(conn)
            )
            self.disconnect(conn)
            return False
        return True


def _log_context(conn: Connection, **fields: str) -> dict[str, str]:
    """Structured fields for a log record about one connection."""
    return {"pet_id": conn.pet_id, "connection": conn.id, **fields}
