"""
Shared fakes for the Kori sync tests.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from kori_sync.connections import Connection
from kori_sync.errors import IntegrationError
from kori_sync.integrations.base import PlaybackSource, TipContext, TipGenerator
from kori_sync.models import PlaybackState


class FakeConnection(Connection):
    """Records every message the hub sends it."""

    def __init__(self, pet_id: str = "default", fail_sends: bool = False) -> None:
        super().__init__(pet_id)
        self.open = True
        self.fail_sends = fail_sends
        self.sent: list[dict] = []

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_text(self, text: str) -> None:
        if self.fail_sends:
            raise ConnectionResetError("peer went away")
        self.sent.append(json.loads(text))

    def types(self) -> list[str]:
        return [message["type"] for message in self.sent]

    def of_type(self, message_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == message_type]


class FakePlayback(PlaybackSource):
    def __init__(self, enabled: bool = True, state: PlaybackState | None = None) -> None:
        self.enabled = enabled
        self.state = state
        self.error: Exception | None = None
        self.calls = 0

    async def integration_enabled(self, pet_id: str) -> bool:
        return self.enabled

    async def sync_playback(self, pet_id: str) -> PlaybackState | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.state


class FakeTipGenerator(TipGenerator):
    def __init__(self, tip: str = "Drink some water.", fail: bool = False) -> None:
        self.tip = tip
        self.fail = fail
        self.contexts: list[TipContext] = []

    async def generate(self, context: TipContext) -> str:
        self.contexts.append(context)
        if self.fail:
            raise IntegrationError("service unavailable")
        return self.tip


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def make_connection():
    def _make(pet_id: str = "default", **kwargs) -> FakeConnection:
        return FakeConnection(pet_id, **kwargs)

    return _make
