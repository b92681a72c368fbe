"""
Spotify playback polling.

Reads the currently playing track for a pet's linked Spotify account. Tokens
are kept in the state store; the access token is refreshed from the stored
(or configured) refresh token when it expires. Linking an account through the
authorization-code flow happens outside this service.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from ..errors import IntegrationError
from ..models import PlaybackState
from ..store import StateStore
from .base import PlaybackSource

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = "https://accounts.spotify.com/api/token"
CURRENTLY_PLAYING_ENDPOINT = "https://api.spotify.com/v1/me/player/currently-playing"
REQUEST_SCOPE = "user-read-currently-playing user-read-playback-state"

# Refresh slightly before Spotify's stated expiry
EXPIRY_MARGIN_SECONDS = 30


def _now_ms() -> int:
    return int(time.time() * 1000)


class SpotifyPlayback(PlaybackSource):
    """Spotify implementation of the playback source."""

    def __init__(
        self,
        store: StateStore,
        *,
        client_id: str | None,
        client_secret: str | None,
        fallback_refresh_token: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._client_id = client_id
        self._client_secret = client_secret
        self._fallback_refresh_token = fallback_refresh_token
        self._timeout = timeout
        self._client = client
        self._clock = clock
        # pet_id -> (access token, expiry in epoch ms)
        self._cached: dict[str, tuple[str, int]] = {}

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    async def integration_enabled(self, pet_id: str) -> bool:
        if not self.configured:
            return False
        tokens = await self._store.get_integration_tokens(pet_id)
        return bool(tokens.refresh_token or self._fallback_refresh_token)

    async def sync_playback(self, pet_id: str) -> PlaybackState | None:
        return await self._fetch_playback(pet_id, retried=False)

    # MARK: - Private Helpers

    async def _fetch_playback(self, pet_id: str, retried: bool) -> PlaybackState | None:
        token = await self._access_token(pet_id)
        if not token:
            return None

        response = await self._request(
            "GET",
            CURRENTLY_PLAYING_ENDPOINT,
            headers={"Authorization": f"Bearer {token}"},
        )

        if response.status_code == 204:
            return PlaybackState(is_playing=False, track=None)

        if response.status_code == 200:
            return _parse_playback(response.json())

        if response.status_code == 401 and not retried:
            # Access token expired or was revoked; refresh once and retry
            self._cached.pop(pet_id, None)
            await self._refresh_access_token(pet_id)
            return await self._fetch_playback(pet_id, retried=True)

        if response.status_code == 401:
            logger.warning("Spotify unauthorized for pet %s; clearing tokens", pet_id)
            self._cached.pop(pet_id, None)
            await self._store.clear_integration_tokens(pet_id)

        logger.warning(
            "Unexpected Spotify playback response %s: %s",
            response.status_code,
            response.text,
        )
        return None

    async def _access_token(self, pet_id: str) -> str | None:
        if not self.configured:
            return None

        now = self._clock()
        stored = await self._store.get_integration_tokens(pet_id)
        if stored.access_token and stored.expires_at and stored.expires_at > now:
            self._cached[pet_id] = (stored.access_token, stored.expires_at)

        cached = self._cached.get(pet_id)
        if cached and cached[1] > now:
            return cached[0]

        return await self._refresh_access_token(pet_id)

    async def _refresh_access_token(self, pet_id: str) -> str | None:
        if not self.configured:
            return None

        stored = await self._store.get_integration_tokens(pet_id)
        refresh_token = stored.refresh_token or self._fallback_refresh_token
        if not refresh_token:
            return None

        response = await self._request(
            "POST",
            TOKEN_ENDPOINT,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth=(self._client_id, self._client_secret),
        )
        if response.is_error:
            logger.warning(
                "Failed to refresh Spotify access token %s: %s",
                response.status_code,
                response.text,
            )
            return None

        data = response.json()
        expires_at = self._clock() + (
            int(data["expires_in"]) - EXPIRY_MARGIN_SECONDS
        ) * 1000
        self._cached[pet_id] = (data["access_token"], expires_at)

        await self._store.set_integration_tokens(
            pet_id,
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_at=expires_at,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope") or stored.scope or REQUEST_SCOPE,
        )
        return data["access_token"]

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, url, **kwargs)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise IntegrationError(f"Spotify request failed: {e}") from e


def _parse_playback(body: dict[str, Any]) -> PlaybackState:
    item = body.get("item")
    if not body.get("is_playing") or not item:
        return PlaybackState(is_playing=False, track=None)

    name = item.get("name") or "Unknown Track"
    artists = [a["name"] for a in item.get("artists") or [] if a.get("name")]
    track = f"{name} — {', '.join(artists)}" if artists else name
    return PlaybackState(is_playing=True, track=track)
