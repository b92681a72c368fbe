"""
Connections the hub can push messages to.

A connection belongs to one pet and moves through ``Connecting -> Open ->
Closed``. The hub checks ``is_open`` before every send, so a half-closed
connection is skipped rather than written to.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator

from fastapi import WebSocket
from starlette.websockets import WebSocketState

# Unread messages an event stream may hold before it is dropped
MAX_PENDING_MESSAGES = 256


class Connection(ABC):
    """A client connection registered with the hub."""

    def __init__(self, pet_id: str) -> None:
        self.pet_id = pet_id
        self.id = uuid.uuid4().hex[:8]

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    async def send_text(self, text: str) -> None:
        ...

    def close(self) -> None:
        """Stop delivering messages. Transports that own a queue override this."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} pet={self.pet_id}>"


class WebSocketConnection(Connection):
    """A bidirectional WebSocket client."""

    def __init__(self, websocket: WebSocket, pet_id: str) -> None:
        super().__init__(pet_id)
        self._websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, text: str) -> None:
        await self._websocket.send_text(text)


class StreamConnection(Connection):
    """
    A push-only client fed through a queue, used by the Server-Sent Events
    endpoint. ``messages()`` yields queued texts until ``close()`` is called.

    At most ``max_pending`` messages wait in the queue. A consumer that falls
    further behind is closed, and the failed send makes the hub drop it.
    """

    def __init__(self, pet_id: str, max_pending: int = MAX_PENDING_MESSAGES) -> None:
        super().__init__(pet_id)
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max_pending)
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def send_text(self, text: str) -> None:
        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull:
            self.close()
            raise ConnectionError(
                f"{self} has {self._queue.maxsize} unread messages"
            ) from None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            # Stale for a consumer this far behind; it resyncs on reconnect
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def messages(self) -> AsyncGenerator[str, None]:
        while True:
            text = await self._queue.get()
            if text is None:
                return
            yield text
