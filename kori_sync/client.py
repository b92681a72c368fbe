"""
Client sync adapter.

``RealtimeClient`` keeps one WebSocket connection to the sync service open for
a front-end. It asks for the full state whenever a connection opens, applies
``*:state`` pushes to three local slots and notifies subscribers. Updates are
sent as patches and never applied locally: the slots only ever hold what the
server broadcast, so a rejected value is never shown. When the connection
drops, the client reconnects after a fixed delay, indefinitely.
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from typing import Any, Literal

import websockets
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .config import Settings, get_settings
from .models import (
    PetPatch,
    PetState,
    Preferences,
    PreferencesPatch,
    StatsPatch,
    StatsPayload,
)
from .protocol import CAT_STATE, ERROR, PREFS_STATE, STATS_STATE

logger = logging.getLogger(__name__)

FALLBACK_WS_URL = "ws://127.0.0.1:4000/ws"

Status = Literal["connecting", "connected", "disconnected"]
Listener = Callable[[str, Any], None]

_BIND_ALL_HOSTS = {"", "0.0.0.0", "::"}


def resolve_ws_url(explicit: str | None = None, settings: Settings | None = None) -> str:
    """
    Pick the endpoint to connect to.

    Order: the explicit URL, the configured ``ws_url``, a URL derived from the
    configured host and port, and finally the loopback default.
    """
    if explicit:
        return explicit
    settings = settings or get_settings()
    if settings.ws_url:
        return settings.ws_url
    if settings.host not in _BIND_ALL_HOSTS:
        return f"ws://{settings.host}:{settings.port}/ws"
    return FALLBACK_WS_URL


class RealtimeClient:
    """
    Reconnecting client for the realtime protocol.

    Subscribers registered with ``subscribe`` are called with
    ``(channel, value)`` where channel is one of ``status``, ``pet``,
    ``preferences``, ``stats`` or ``error``.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        reconnect_delay: float | None = None,
        connect: Callable[[str], Any] = websockets.connect,
    ) -> None:
        self.url = resolve_ws_url(url)
        if reconnect_delay is None:
            reconnect_delay = get_settings().reconnect_delay
        self.reconnect_delay = reconnect_delay
        self._connect = connect

        self.status: Status = "disconnected"
        self.pet: PetState | None = None
        self.preferences: Preferences | None = None
        self.stats: StatsPayload | None = None
        self.error: str | None = None
        self.connection_attempts = 0

        self._socket: Any = None
        self._listeners: list[Listener] = []
        self._closing = False
        self._task: asyncio.Task[None] | None = None

    # MARK: - Lifecycle

    def start(self) -> asyncio.Task[None]:
        """Run the connection loop in the background."""
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.create_task(self.run(), name="kori-client")
        return self._task

    async def run(self) -> None:
        """Connect and keep reconnecting until ``close()`` is called."""
        while not self._closing:
            self.connection_attempts += 1
            self._set_status("connecting")
            logger.debug("Connecting to %s", self.url)
            try:
                async with self._connect(self.url) as socket:
                    self._socket = socket
                    self._set_status("connected")
                    self._set_error(None)
                    await self.refresh_all()
                    async for raw in socket:
                        self._handle(raw)
            except (OSError, websockets.WebSocketException) as e:
                logger.debug("Connection to %s failed: %s", self.url, e)
                self._set_error(str(e) or type(e).__name__)
            finally:
                self._socket = None

            if self._closing:
                break
            self._set_status("disconnected")
            logger.info("Disconnected, retrying in %.1fs", self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

        self._set_status("disconnected")

    async def close(self) -> None:
        self._closing = True
        socket = self._socket
        if socket is not None:
            with contextlib.suppress(Exception):
                await socket.close()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._set_status("disconnected")

    # MARK: - Observers

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # MARK: - Requests

    async def send(self, message_type: str, payload: dict[str, Any] | None = None) -> bool:
        """Send a message. Skipped, returning False, while not connected."""
        socket = self._socket
        if socket is None or self.status != "connected":
            logger.debug("Skip send (socket not open): %s", message_type)
            return False

        message: dict[str, Any] = {"type": message_type}
        if payload is not None:
            message["payload"] = payload
        try:
            await socket.send(json.dumps(message))
        except websockets.ConnectionClosed:
            logger.debug("Skip send (socket closed): %s", message_type)
            return False
        return True

    async def refresh_all(self) -> None:
        await self.send("cat:get_state")
        await self.send("prefs:get")
        await self.send("stats:get")

    async def ping(self) -> bool:
        return await self.send("ping")

    async def update_pet(
        self,
        *,
        mood: str | None = None,
        energy: int | None = None,
        hunger: int | None = None,
    ) -> bool:
        patch = _patch(PetPatch, mood=mood, energy=energy, hunger=hunger)
        return await self.send("cat:update_state", patch)

    async def update_preferences(
        self,
        *,
        is_student: bool | None = None,
        theme: str | None = None,
        timer_method: str | None = None,
    ) -> bool:
        patch = _patch(
            PreferencesPatch,
            is_student=is_student,
            theme=theme,
            timer_method=timer_method,
        )
        return await self.send("prefs:update", patch)

    async def update_stats(
        self,
        *,
        mood: str | None = None,
        room_temperature: float | None = None,
        focus_level: int | None = None,
        confidence: float | None = None,
        noise_pollution: float | None = None,
    ) -> bool:
        patch = _patch(
            StatsPatch,
            mood=mood,
            room_temperature=room_temperature,
            focus_level=focus_level,
            confidence=confidence,
            noise_pollution=noise_pollution,
        )
        return await self.send("stats:update", patch)

    # MARK: - Private Helpers

    def _handle(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Ignoring malformed message: %r", raw)
            return
        if not isinstance(message, dict):
            return

        message_type = message.get("type")
        payload = message.get("payload")
        try:
            if message_type == CAT_STATE:
                self.pet = PetState.model_validate(payload)
                self._notify("pet", self.pet)
            elif message_type == PREFS_STATE:
                self.preferences = Preferences.model_validate(payload)
                self._notify("preferences", self.preferences)
            elif message_type == STATS_STATE:
                self.stats = StatsPayload.model_validate(payload)
                self._notify("stats", self.stats)
            elif message_type == ERROR:
                self._set_error(payload if isinstance(payload, str) else "Server error")
        except PydanticValidationError as e:
            logger.warning("Ignoring invalid %s payload: %s", message_type, e)

    def _set_status(self, status: Status) -> None:
        if status != self.status:
            self.status = status
            self._notify("status", status)

    def _set_error(self, error: str | None) -> None:
        self.error = error
        if error is not None:
            self._notify("error", error)

    def _notify(self, channel: str, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(channel, value)
            except Exception:
                logger.exception("Listener failed for %s", channel)


def _patch(model: type[BaseModel], **fields: Any) -> dict[str, Any]:
    """Wire patch holding only the fields that were given."""
    given = {name: value for name, value in fields.items() if value is not None}
    return model(**given).model_dump(exclude_unset=True)
