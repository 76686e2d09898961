"""Fan-out of session events to WebSocket clients.

Each connected client gets its own bounded queue. ``publish`` never
blocks: when a client's queue is full its oldest message is dropped to
make room, so a slow browser loses preview frames instead of stalling
the session.
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from dslr_photobooth.devices.events import OutboundEvent
from dslr_photobooth.observability import get_logger

logger = get_logger(__name__)

DEFAULT_CLIENT_QUEUE_SIZE = 16


class Broadcaster:
    """``EventPublisher`` backed by per-client asyncio queues."""

    def __init__(self, queue_size: int = DEFAULT_CLIENT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._clients: list[asyncio.Queue[dict[str, Any]]] = []
        self.dropped = 0

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def register(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._clients.append(queue)
        logger.info("Client connected", clients=len(self._clients))
        return queue

    def unregister(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        if queue in self._clients:
            self._clients.remove(queue)
            logger.info("Client disconnected", clients=len(self._clients))

    def publish(self, event: OutboundEvent) -> None:
        message = event.to_message()
        for queue in list(self._clients):
            if queue.full():
                try:
                    queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(message)

    async def serve(self, websocket: WebSocket) -> None:
        """Pump events to one accepted WebSocket until it disconnects.

        Anything the client sends is read and ignored; reading is what
        notices the disconnect.
        """
        queue = self.register()
        sender = asyncio.create_task(self._pump(queue, websocket), name="ws-sender")
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            self.unregister(queue)

    @staticmethod
    async def _pump(queue: asyncio.Queue[dict[str, Any]], websocket: WebSocket) -> None:
        try:
            while True:
                message = await queue.get()
                await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("WebSocket send stopped", error=str(e))
