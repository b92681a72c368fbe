"""
Tests for the external integrations, run against mocked HTTP transports.
"""

import json

import httpx
import pytest

from kori_sync.errors import IntegrationError
from kori_sync.integrations.base import TipContext
from kori_sync.integrations.gemini import GeminiTipGenerator
from kori_sync.integrations.huggingface import HuggingFaceMoodDetector
from kori_sync.integrations.spotify import (
    CURRENTLY_PLAYING_ENDPOINT,
    TOKEN_ENDPOINT,
    SpotifyPlayback,
)
from kori_sync.store import MemoryStateStore

NOW_MS = 1_760_000_000_000

PLAYING = {
    "is_playing": True,
    "item": {"name": "Weightless", "artists": [{"name": "Marconi Union"}]},
}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# MARK: - Spotify


class TestSpotifyPlayback:
    def setup_method(self):
        self.store = MemoryStateStore()
        self.requests: list[httpx.Request] = []
        self.playback_responses: list[httpx.Response] = []
        self.token_count = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == TOKEN_ENDPOINT:
            self.token_count += 1
            return httpx.Response(
                200,
                json={"access_token": f"access-{self.token_count}", "expires_in": 3600},
            )
        if str(request.url) == CURRENTLY_PLAYING_ENDPOINT:
            return self.playback_responses.pop(0)
        return httpx.Response(404)

    def playback(self, **kwargs) -> SpotifyPlayback:
        options = {
            "client_id": "id",
            "client_secret": "secret",
            "fallback_refresh_token": "refresh",
            "client": mock_client(self.handler),
            "clock": lambda: NOW_MS,
        }
        options.update(kwargs)
        return SpotifyPlayback(self.store, **options)

    async def test_not_configured(self):
        playback = self.playback(client_id=None)
        assert await playback.integration_enabled("default") is False
        assert await playback.sync_playback("default") is None
        assert self.requests == []

    async def test_enabled_needs_a_refresh_token(self):
        assert await self.playback().integration_enabled("default") is True
        playback = self.playback(fallback_refresh_token=None)
        assert await playback.integration_enabled("default") is False

    async def test_currently_playing(self):
        self.playback_responses.append(httpx.Response(200, json=PLAYING))
        state = await self.playback().sync_playback("default")

        assert state.is_playing is True
        assert state.track == "Weightless — Marconi Union"

        token_request, playback_request = self.requests
        assert token_request.headers["authorization"].startswith("Basic ")
        assert b"grant_type=refresh_token" in token_request.content
        assert playback_request.headers["authorization"] == "Bearer access-1"

        tokens = await self.store.get_integration_tokens("default")
        assert tokens.access_token == "access-1"
        assert tokens.refresh_token == "refresh"
        assert tokens.expires_at == NOW_MS + (3600 - 30) * 1000

    async def test_access_token_is_reused(self):
        self.playback_responses.extend(
            [httpx.Response(204), httpx.Response(204)]
        )
        playback = self.playback()
        await playback.sync_playback("default")
        await playback.sync_playback("default")
        assert self.token_count == 1

    async def test_nothing_playing(self):
        self.playback_responses.append(httpx.Response(204))
        state = await self.playback().sync_playback("default")
        assert state.is_playing is False
        assert state.track is None

    async def test_paused(self):
        self.playback_responses.append(
            httpx.Response(200, json={**PLAYING, "is_playing": False})
        )
        state = await self.playback().sync_playback("default")
        assert state.is_playing is False

    async def test_unauthorized_refreshes_once(self):
        self.playback_responses.extend(
            [httpx.Response(401), httpx.Response(200, json=PLAYING)]
        )
        state = await self.playback().sync_playback("default")
        assert state.is_playing is True
        assert self.token_count == 2
        assert self.requests[-1].headers["authorization"] == "Bearer access-2"

    async def test_unauthorized_twice_clears_tokens(self):
        self.playback_responses.extend([httpx.Response(401), httpx.Response(401)])
        assert await self.playback().sync_playback("default") is None

        tokens = await self.store.get_integration_tokens("default")
        assert tokens.access_token is None
        assert tokens.refresh_token is None

    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(IntegrationError):
            await self.playback(client=mock_client(handler)).sync_playback("default")


# MARK: - Gemini


CONTEXT = TipContext(
    mood="sad",
    confidence="0.60",
    room_temperature="22.0",
    noise="0.10",
    focus="4",
    timer_method="pomodoro",
    is_student="yes",
)


class TestGeminiTipGenerator:
    async def test_generate(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "candidates": [
                        {"content": {"parts": [{"text": "Breathe. "}, {"text": "Then go."}]}}
                    ]
                },
            )

        generator = GeminiTipGenerator("key", "gemini-test", client=mock_client(handler))
        assert await generator.generate(CONTEXT) == "Breathe. Then go."

        request = seen[0]
        assert request.url.path.endswith("/models/gemini-test:generateContent")
        assert request.headers["x-goog-api-key"] == "key"
        body = json.loads(request.content)
        assert "Mood: sad" in body["contents"][0]["parts"][0]["text"]
        assert body["generationConfig"]["maxOutputTokens"] == 160

    async def test_http_error(self):
        generator = GeminiTipGenerator(
            "key", client=mock_client(lambda request: httpx.Response(500))
        )
        with pytest.raises(IntegrationError):
            await generator.generate(CONTEXT)

    async def test_unexpected_response(self):
        generator = GeminiTipGenerator(
            "key", client=mock_client(lambda request: httpx.Response(200, json={}))
        )
        with pytest.raises(IntegrationError, match="Unexpected Gemini response"):
            await generator.generate(CONTEXT)

    @pytest.mark.parametrize(
        "parts",
        [["Breathe."], [None], [{"text": 3}], "Breathe."],
    )
    async def test_malformed_parts(self, parts):
        body = {"candidates": [{"content": {"parts": parts}}]}
        generator = GeminiTipGenerator(
            "key", client=mock_client(lambda request: httpx.Response(200, json=body))
        )
        with pytest.raises(IntegrationError, match="Unexpected Gemini response"):
            await generator.generate(CONTEXT)


# MARK: - Hugging Face


class TestHuggingFaceMoodDetector:
    async def test_detect_sorts_scores(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json=[[{"label": "Sad", "score": 0.2}, {"label": "Happy", "score": 0.7}]],
            )

        detector = HuggingFaceMoodDetector(
            "token", model_id="org/model", client=mock_client(handler)
        )
        detection = await detector.detect(b"jpeg bytes")

        assert detection.top.label == "Happy"
        assert [s.label for s in detection.all] == ["Happy", "Sad"]
        assert seen[0].url.path.endswith("/models/org/model")
        assert seen[0].headers["authorization"] == "Bearer token"
        assert seen[0].content == b"jpeg bytes"

    async def test_flat_list(self):
        detector = HuggingFaceMoodDetector(
            "token",
            client=mock_client(
                lambda request: httpx.Response(200, json=[{"label": "Neutral", "score": 0.9}])
            ),
        )
        assert (await detector.detect(b"img")).top.label == "Neutral"

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(503, text="loading"),
            httpx.Response(200, json={"error": "bad"}),
            httpx.Response(200, json=[]),
        ],
    )
    async def test_failures(self, response):
        detector = HuggingFaceMoodDetector(
            "token", client=mock_client(lambda request: response)
        )
        with pytest.raises(IntegrationError):
            await detector.detect(b"img")

    async def test_requires_token_and_image(self):
        with pytest.raises(IntegrationError, match="Missing HF token"):
            await HuggingFaceMoodDetector(None).detect(b"img")
        with pytest.raises(IntegrationError, match="empty"):
            await HuggingFaceMoodDetector("token").detect(b"")
