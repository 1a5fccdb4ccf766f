"""Fan-out of live messages to websocket subscribers."""
import asyncio
import logging
from typing import Protocol, Set

from fastapi import WebSocket

from .schemas import BroadcastMessage

logger = logging.getLogger(__name__)

WELCOME_TEXT = "Connected to Primis Backend WebSocket"
SHUTDOWN_TEXT = "Server shutting down"


class Subscriber(Protocol):
    async def send(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


class WebSocketSubscriber:
    """Adapts a FastAPI websocket to the Subscriber interface."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send(self, data: bytes) -> None:
        await self.websocket.send_text(data.decode("utf-8"))

    async def close(self) -> None:
        await self.websocket.close(code=1001, reason=SHUTDOWN_TEXT)


class ConnectionManager:
    """Broadcast hub: the subscriber set changes only via register/unregister."""

    def __init__(self, send_timeout: float = 5.0) -> None:
        self.active_connections: Set[Subscriber] = set()
        self.send_timeout = send_timeout
        self._lock = asyncio.Lock()

    async def register(self, subscriber: Subscriber) -> None:
        async with self._lock:
            self.active_connections.add(subscriber)
        logger.info("WebSocket client connected. Total connections: %d", self.connection_count)
        welcome = BroadcastMessage.connection(WELCOME_TEXT)
        if not await self._safe_send(subscriber, welcome.encode()):
            await self.unregister(subscriber)

    async def unregister(self, subscriber: Subscriber) -> None:
        async with self._lock:
            if subscriber not in self.active_connections:
                return
            self.active_connections.discard(subscriber)
        logger.info("WebSocket client disconnected. Total connections: %d", self.connection_count)

    async def broadcast(self, message: BroadcastMessage) -> int:
        """Deliver to every subscriber; returns how many sends succeeded."""
        data = message.encode()
        async with self._lock:
            connections = list(self.active_connections)
        if not connections:
            return 0

        results = await asyncio.gather(*(self._safe_send(s, data) for s in connections))
        failed = [s for s, ok in zip(connections, results) if not ok]
        for s in failed:
            await self.unregister(s)

        sent = len(connections) - len(failed)
        logger.info("Broadcasted %s message to %d WebSocket client(s)", message.kind.value, sent)
        return sent

    async def shutdown(self) -> None:
        async with self._lock:
            connections = list(self.active_connections)
            self.active_connections.clear()
        if not connections:
            return
        logger.info("Closing %d WebSocket client(s)...", len(connections))
        notice = BroadcastMessage.connection(SHUTDOWN_TEXT).encode()
        await asyncio.gather(*(self._safe_send(s, notice) for s in connections))
        await asyncio.gather(*(self._safe_close(s) for s in connections))

    async def _safe_send(self, subscriber: Subscriber, data: bytes) -> bool:
        try:
            await asyncio.wait_for(subscriber.send(data), timeout=self.send_timeout)
            return True
        except Exception as e:
            logger.debug("Failed to send to WebSocket: %r", e)
            return False

    async def _safe_close(self, subscriber: Subscriber) -> None:
        try:
            await asyncio.wait_for(subscriber.close(), timeout=self.send_timeout)
        except Exception as e:
            logger.debug("Failed to close WebSocket: %r", e)

    @property
    def connection_count(self) -> int:
        return len(self.active_connections)
