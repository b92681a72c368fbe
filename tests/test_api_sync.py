"""
End-to-end tests for the Kori sync service.

These tests drive the FastAPI application through its three transports:
REST routes and WebSocket connections in-process, and Server-Sent Events and
the client adapter against a live server.
"""

import asyncio
import contextlib
import json
import socket
import threading
import time

import httpx
import uvicorn
from fastapi.testclient import TestClient
from httpx_sse import aconnect_sse

from kori_sync.client import RealtimeClient
from kori_sync.config import Settings
from kori_sync.integrations.base import NullPlaybackSource
from kori_sync.models import PreferencesPatch
from kori_sync.server import create_app
from kori_sync.store import MemoryStateStore


def make_settings(**overrides) -> Settings:
    options = {
        "poll_interval": 0,
        "gemini_api_key": None,
        "spotify_client_id": None,
        "spotify_client_secret": None,
    }
    options.update(overrides)
    return Settings(**options)


def receive_initial_state(ws) -> dict:
    messages = [ws.receive_json() for _ in range(3)]
    assert [m["type"] for m in messages] == ["cat:state", "prefs:state", "stats:state"]
    return {m["type"]: m["payload"] for m in messages}


# MARK: - Sync


class TestAPISync:
    """Integration tests covering the REST and WebSocket surfaces."""

    def setup_method(self):
        """Set up a fresh app with a new in-memory store for each test."""
        self.store = MemoryStateStore()
        self.app = create_app(
            self.store, make_settings(), playback=NullPlaybackSource()
        )

    def test_health(self):
        with TestClient(self.app) as client:
            assert client.get("/").json() == {"status": "ok", "service": "kori-sync"}

    def test_complete_workflow(self):
        """Test the complete workflow: get -> update -> verify -> poll."""
        with TestClient(self.app) as client:
            # 1. Initial pet state is the default
            initial = client.get("/api/cat/state")
            assert initial.status_code == 200
            assert initial.json()["mood"] == "idle"
            assert initial.json()["energy"] == 100

            # 2. Update the mood
            updated = client.post("/api/cat/state", json={"mood": "excited"})
            assert updated.status_code == 200
            assert updated.json()["mood"] == "excited"

            # 3. The change is visible to the next read
            assert client.get("/api/cat/state").json() == updated.json()

            # 4. Preferences and stats go through the same path
            prefs = client.post("/api/prefs/state", json={"is_student": True})
            assert prefs.json()["is_student"] is True
            assert prefs.json()["theme"] == "light"

            stats = client.post(
                "/api/stats/state", json={"mood": "excited", "confidence": 0.82}
            )
            assert stats.status_code == 200
            assert stats.json()["confidence"] == 0.82
            assert stats.json()["confidence_map"]["excited"] == 0.82

            # 5. The polling endpoint returns all three at once
            poll = client.get("/poll").json()
            assert poll["cat"] == updated.json()
            assert poll["prefs"] == prefs.json()
            assert poll["stats"] == client.get("/api/stats/state").json()

    def test_startup_seeds_daily_tip(self):
        with TestClient(self.app) as client:
            stats = client.get("/api/stats/state").json()
            assert stats["daily_tip"].startswith("Mood reads Ok.")
            assert stats["spotify_connected"] is False

    def test_invalid_mood(self):
        with TestClient(self.app) as client:
            response = client.post("/api/cat/state", json={"mood": "zzz"})
            assert response.status_code == 400
            assert response.json()["error"].startswith('Invalid cat state "zzz"')
            assert client.get("/api/cat/state").json()["mood"] == "idle"

    def test_malformed_patch(self):
        with TestClient(self.app) as client:
            response = client.post("/api/cat/state", json={"energy": "full"})
            assert response.status_code == 422
            response = client.post("/api/prefs/state", json={"color": "red"})
            assert response.status_code == 422

    def test_pet_id_scoping(self):
        with TestClient(self.app) as client:
            client.post("/api/cat/state", params={"pet_id": "kori"}, json={"mood": "shy"})
            assert client.get("/api/cat/state", params={"pet_id": "kori"}).json()["mood"] == "shy"
            assert client.get("/api/cat/state").json()["mood"] == "idle"

    def test_camel_case_pet_id(self):
        with TestClient(self.app) as client:
            client.post("/api/cat/state", params={"petId": "kori"}, json={"mood": "shy"})
            assert client.get("/api/cat/state", params={"pet_id": "kori"}).json()["mood"] == "shy"
            assert client.get("/poll", params={"petId": "kori"}).json()["cat"]["mood"] == "shy"
            assert client.get("/api/cat/state").json()["mood"] == "idle"

            with client.websocket_connect("/ws?petId=kori") as ws:
                assert receive_initial_state(ws)["cat:state"]["mood"] == "shy"

    def test_websocket_initial_state(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as ws:
                state = receive_initial_state(ws)
                assert state["cat:state"]["mood"] == "idle"
                assert state["prefs:state"]["timer_method"] == "pomodoro"
                assert state["stats:state"]["confidence"] == 0.0

    def test_websocket_fan_out(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
                receive_initial_state(a)
                receive_initial_state(b)

                a.send_json({"type": "cat:update_state", "payload": {"mood": "excited"}})

                for ws in (a, b):
                    message = ws.receive_json()
                    assert message["type"] == "cat:state"
                    assert message["payload"]["mood"] == "excited"

    def test_websocket_invalid_mood_only_errors_sender(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
                receive_initial_state(a)
                receive_initial_state(b)

                a.send_json({"type": "cat:update_state", "payload": {"mood": "zzz"}})
                error = a.receive_json()
                assert error["type"] == "error"
                assert error["payload"].startswith('Invalid cat state "zzz"')

                # Nothing was broadcast: b's next message answers its own ping
                b.send_json({"type": "ping"})
                assert b.receive_json() == {"type": "pong"}

            assert client.get("/api/cat/state").json()["mood"] == "idle"

    def test_websocket_protocol_errors(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as ws:
                receive_initial_state(ws)

                ws.send_text("{not json")
                assert ws.receive_json() == {"type": "error", "payload": "Invalid JSON"}

                ws.send_json({"type": "cat:fly"})
                assert ws.receive_json() == {"type": "error", "payload": "Unknown type"}

                ws.send_json({"type": {"a": 1}})
                assert ws.receive_json() == {"type": "error", "payload": "Unknown type"}

                # Still served after errors
                ws.send_bytes(json.dumps({"type": "ping"}).encode())
                assert ws.receive_json() == {"type": "pong"}

    def test_websocket_stats_scenario(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as ws:
                receive_initial_state(ws)

                ws.send_json(
                    {"type": "stats:update", "payload": {"mood": "excited", "confidence": 0.82}}
                )
                message = ws.receive_json()
                assert message["type"] == "stats:state"
                assert message["payload"]["confidence"] == 0.82
                assert message["payload"]["confidence_map"]["excited"] == 0.82

                ws.send_json({"type": "stats:get"})
                assert ws.receive_json()["payload"] == message["payload"]

    def test_rest_update_reaches_websocket_with_same_shape(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as ws:
                receive_initial_state(ws)

                response = client.post("/api/prefs/state", json={"theme": "dark"})
                message = ws.receive_json()
                assert message == {"type": "prefs:state", "payload": response.json()}

                response = client.post("/api/stats/state", json={"focus_level": 9})
                message = ws.receive_json()
                assert message == {"type": "stats:state", "payload": response.json()}

    def test_websocket_pet_scoping(self):
        with TestClient(self.app) as client:
            with (
                client.websocket_connect("/ws?pet_id=kori") as kori,
                client.websocket_connect("/ws") as default,
            ):
                receive_initial_state(kori)
                receive_initial_state(default)

                kori.send_json({"type": "cat:update", "payload": {"mood": "dance"}})
                assert kori.receive_json()["payload"]["mood"] == "dance"

                default.send_json({"type": "ping"})
                assert default.receive_json() == {"type": "pong"}


# MARK: - Live Server


@contextlib.contextmanager
def live_server(app):
    """Run the app on a free port in a background thread."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    host, port = sock.getsockname()
    sock.close()
    base_url = f"http://{host}:{port}"

    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        loop="asyncio",
        lifespan="on",
        log_level="warning",
    )
    server = uvicorn.Server(config)

    def run_server() -> None:
        asyncio.run(server.serve())

    thread = threading.Thread(target=run_server, daemon=True)
    thread.start()

    # Wait for server to be ready
    start = time.time()
    while time.time() - start < 5.0:
        try:
            r = httpx.get(base_url + "/", timeout=0.2)
            if r.status_code == 200:
                break
        except Exception:
            pass
        time.sleep(0.05)
    else:
        server.should_exit = True
        thread.join(timeout=1.0)
        assert False, "Server did not start in time"

    try:
        yield base_url
    finally:
        server.should_exit = True
        thread.join(timeout=2.0)


async def eventually(predicate, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(0.02)
    raise AssertionError("condition not met in time")


class TestAPIStream:
    """Integration tests covering the SSE stream and the client adapter."""

    def setup_method(self):
        self.store = MemoryStateStore()

    async def test_streaming_api(self):
        """The SSE stream opens with the full state and then carries updates."""
        app = create_app(self.store, make_settings(), playback=NullPlaybackSource())

        with live_server(app) as base_url:
            async with httpx.AsyncClient(
                base_url=base_url, timeout=httpx.Timeout(5.0, read=None)
            ) as client:
                received: list[dict] = []
                initial_state = asyncio.Event()

                async def consume() -> None:
                    async with aconnect_sse(client, "GET", "/events") as es:
                        assert es.response.status_code == 200
                        content_type = es.response.headers.get("content-type", "")
                        assert content_type.startswith("text/event-stream")

                        async for sse in es.aiter_sse():
                            received.append(json.loads(sse.data))
                            if len(received) == 3:
                                initial_state.set()
                            if len(received) >= 5:
                                break

                consumer_task = asyncio.create_task(consume())
                try:
                    await asyncio.wait_for(initial_state.wait(), timeout=3.0)

                    resp1 = await client.post("/api/cat/state", json={"mood": "excited"})
                    assert resp1.status_code == 200
                    resp2 = await client.post("/api/cat/state", json={"mood": "sad"})
                    assert resp2.status_code == 200

                    await asyncio.wait_for(consumer_task, timeout=3.0)
                finally:
                    if not consumer_task.done():
                        consumer_task.cancel()
                        with contextlib.suppress(BaseException):
                            await consumer_task

                assert [m["type"] for m in received] == [
                    "cat:state",
                    "prefs:state",
                    "stats:state",
                    "cat:state",
                    "cat:state",
                ]
                assert received[3]["payload"] == resp1.json()
                assert received[4]["payload"]["mood"] == "sad"

    async def test_realtime_client(self):
        """The client adapter syncs, sends updates and sees poller pushes."""
        app = create_app(
            self.store,
            make_settings(poll_interval=0.05),
            playback=NullPlaybackSource(),
        )

        with live_server(app) as base_url:
            client = RealtimeClient(
                base_url.replace("http://", "ws://") + "/ws", reconnect_delay=0.05
            )
            client.start()
            try:
                await eventually(lambda: client.stats is not None)
                assert client.status == "connected"
                assert client.pet.mood == "idle"
                assert client.preferences.theme == "light"

                await client.update_pet(mood="dance")
                await eventually(lambda: client.pet.mood == "dance")

                # Written behind the hub's back; the poller has to find it
                await self.store.update_preferences(
                    "default", PreferencesPatch(theme="dark")
                )
                await eventually(lambda: client.preferences.theme == "dark")

                await client.update_pet(mood="zzz")
                await eventually(lambda: client.error is not None)
                assert client.pet.mood == "dance"
            finally:
                await client.close()
