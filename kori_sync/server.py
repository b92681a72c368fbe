"""
FastAPI server for the Kori sync service.

This module exposes the connection hub over three transports that share one
wire shape: a bidirectional WebSocket, a push-only Server-Sent Events stream,
and plain REST routes for polling clients. REST writes go through the same
hub path as WebSocket messages, so every transport observes every change.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request, WebSocket
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .connections import StreamConnection, WebSocketConnection
from .errors import StoreError, ValidationError
from .hub import ConnectionHub
from .integrations.base import NullPlaybackSource, PlaybackSource, TipGenerator
from .integrations.gemini import GeminiTipGenerator
from .integrations.spotify import SpotifyPlayback
from .logging import setup_logging
from .models import (
    PetPatch,
    PetState,
    Preferences,
    PreferencesPatch,
    StatsPatch,
    StatsPayload,
)
from .poller import ChangePoller
from .store import StateStore, create_store
from .tips import TipService

logger = logging.getLogger(__name__)


# API Response Schemas
class PollResponse(BaseModel):
    """All three entities, as pushed on the realtime transports."""

    cat: PetState = Field(..., description="Pet state, as in cat:state")
    prefs: Preferences = Field(..., description="Preferences, as in prefs:state")
    stats: StatsPayload = Field(..., description="Stats payload, as in stats:state")


def build_playback(store: StateStore, settings: Settings) -> PlaybackSource:
    if not settings.spotify_configured:
        return NullPlaybackSource()
    return SpotifyPlayback(
        store,
        client_id=settings.spotify_client_id,
        client_secret=settings.spotify_client_secret,
        fallback_refresh_token=settings.spotify_refresh_token,
        timeout=settings.integration_timeout,
    )


def build_tip_generator(settings: Settings) -> TipGenerator | None:
    if not settings.gemini_api_key:
        return None
    return GeminiTipGenerator(
        settings.gemini_api_key,
        settings.gemini_model,
        timeout=settings.integration_timeout,
    )


def create_app(
    store: StateStore,
    settings: Settings | None = None,
    *,
    playback: PlaybackSource | None = None,
    tip_generator: TipGenerator | None = None,
) -> FastAPI:
    """
    Create a FastAPI application around the given store.

    Args:
        store: The state store; opened on startup and closed on shutdown
        settings: Service settings, defaults to the environment
        playback: Playback source, defaults to Spotify when configured
        tip_generator: Tip generator, defaults to Gemini when configured

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    default_pet_id = settings.default_pet_id

    if playback is None:
        playback = build_playback(store, settings)
    if tip_generator is None:
        tip_generator = build_tip_generator(settings)

    tips = TipService(store, tip_generator)
    hub = ConnectionHub(store, playback=playback, tips=tips)
    poller = ChangePoller(
        hub, interval=settings.poll_interval, default_pet_id=default_pet_id
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Open the store, seed the daily tip and run the poller."""
        # Fails startup when the store is unreachable
        await store.open()
        await hub.refresh_tip(default_pet_id)
        if settings.poll_interval > 0:
            poller.start()
        yield
        await poller.stop()
        await hub.close_all()
        await store.close()

    app = FastAPI(
        title="Kori Sync",
        description="Realtime state sync for the Kori companion",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.hub = hub
    app.state.poller = poller
    app.state.store = store

    def resolve_pet_id(
        pet_id: str | None = Query(None),
        camel_pet_id: str | None = Query(None, alias="petId"),
    ) -> str:
        """The pet a request is scoped to, read from ``pet_id`` or ``petId``."""
        return pet_id or camel_pet_id or default_pet_id

    @app.exception_handler(ValidationError)
    async def validation_error_handler(
        request: Request, exc: ValidationError
    ) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Store failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "Failed to access state"})

    @app.get("/")
    async def root() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "kori-sync"}

    # MARK: - Realtime

    @app.websocket("/ws")
    async def realtime(
        websocket: WebSocket, pet_id: str = Depends(resolve_pet_id)
    ) -> None:
        """
        Bidirectional sync connection.

        The client receives the full state on open, then every broadcast for
        its pet, and may send get/update requests at any time.
        """
        await websocket.accept()
        conn = WebSocketConnection(websocket, pet_id)
        try:
            await hub.connect(conn)
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await hub.handle_text(conn, raw)
        finally:
            hub.disconnect(conn)

    @app.get("/events")
    async def stream_events(pet_id: str = Depends(resolve_pet_id)) -> StreamingResponse:
        """
        Stream state updates via Server-Sent Events.

        Each event's data is a realtime message envelope. The stream opens
        with the full state, like a WebSocket connection.

        Returns:
            StreamingResponse with text/event-stream content type
        """
        conn = StreamConnection(pet_id)

        async def event_generator() -> AsyncGenerator[str, None]:
            try:
                await hub.connect(conn)
                async for text in conn.messages():
                    yield f"data: {text}\n\n"
            except asyncio.CancelledError:
                # Client disconnected
                pass
            finally:
                conn.close()
                hub.disconnect(conn)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Headers": "*",
            },
        )

    # MARK: - Polling

    @app.get("/poll")
    async def poll(pet_id: str = Depends(resolve_pet_id)) -> PollResponse:
        """Get the full state in one request."""
        return PollResponse(**await hub.full_state(pet_id))

    @app.get("/api/cat/state")
    async def get_cat_state(pet_id: str = Depends(resolve_pet_id)) -> PetState:
        return await store.get_pet(pet_id)

    @app.post("/api/cat/state")
    async def update_cat_state(
        patch: PetPatch, pet_id: str = Depends(resolve_pet_id)
    ) -> PetState:
        """
        Update the pet state and notify all realtime clients.

        An unknown mood is answered with 400 and leaves the state unchanged.
        """
        return await hub.update_pet(pet_id, patch)

    @app.get("/api/prefs/state")
    async def get_prefs_state(pet_id: str = Depends(resolve_pet_id)) -> Preferences:
        return await store.get_preferences(pet_id)

    @app.post("/api/prefs/state")
    async def update_prefs_state(
        patch: PreferencesPatch, pet_id: str = Depends(resolve_pet_id)
    ) -> Preferences:
        return await hub.update_preferences(pet_id, patch)

    @app.get("/api/stats/state")
    async def get_stats_state(pet_id: str = Depends(resolve_pet_id)) -> StatsPayload:
        return await hub.stats_payload(pet_id)

    @app.post("/api/stats/state")
    async def update_stats_state(
        patch: StatsPatch, pet_id: str = Depends(resolve_pet_id)
    ) -> StatsPayload:
        return await hub.update_stats(pet_id, patch)

    return app


def build_app() -> FastAPI:
    """Application factory used by uvicorn."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    store = create_store(settings.store_backend, settings.database_path)
    return create_app(store, settings)


def main() -> None:
    """Main entry point for the server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "kori_sync.server:build_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
