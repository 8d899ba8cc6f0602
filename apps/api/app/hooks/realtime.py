from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Protocol


logger = logging.getLogger("app.hooks.realtime")


class RealtimePublisher(Protocol):
    def send(self, client_id: str, principal: str, message: dict[str, Any]) -> int:
        ...


@dataclass(eq=False)
class RealtimeConnection:
    client_id: str
    principal: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    queue: asyncio.Queue[dict[str, Any]] = field(default_factory=lambda: asyncio.Queue(maxsize=1000))


class RealtimeHub:
    """Connected realtime clients of this process.

    ``send`` may be called from any thread; messages are handed to the event loop
    that owns the connection queues.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._connections: dict[str, list[RealtimeConnection]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    def connect(self, client_id: str, principal: str) -> RealtimeConnection:
        self._loop = asyncio.get_running_loop()
        connection = RealtimeConnection(client_id=client_id, principal=principal)
        with self._lock:
            self._connections.setdefault(client_id, []).append(connection)
        logger.info("realtime.connected", extra={"subscription_id": client_id, "principal": principal})
        return connection

    def disconnect(self, connection: RealtimeConnection) -> None:
        with self._lock:
            connections = self._connections.get(connection.client_id, [])
            if connection in connections:
                connections.remove(connection)
            if not connections:
                self._connections.pop(connection.client_id, None)
        logger.info("realtime.disconnected", extra={"subscription_id": connection.client_id})

    def connection_count(self) -> int:
        with self._lock:
            return sum(len(items) for items in self._connections.values())

    def send(self, client_id: str, principal: str, message: dict[str, Any]) -> int:
        """Queue ``message`` for the client's connections opened by ``principal``."""

        with self._lock:
            targets = [item for item in self._connections.get(client_id, []) if item.principal == principal]
        loop = self._loop
        if not targets or loop is None or loop.is_closed():
            return 0
        for connection in targets:
            loop.call_soon_threadsafe(self._offer, connection, message)
        return len(targets)

    @staticmethod
    def _offer(connection: RealtimeConnection, message: dict[str, Any]) -> None:
        try:
            connection.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("realtime.queue_full", extra={"subscription_id": connection.client_id})
