"""
Push fan-out for the reference store.

``ConnectionManager`` tracks websocket clients; ``EventHub`` hands every
envelope to the websocket clients and to each NDJSON stream subscriber
(``GET /api/events``).  Both are owned by the app instance, not the module.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks connected WebSocket clients and broadcasts envelopes."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        """Accept a new WebSocket connection and register it."""
        await websocket.accept()
        async with self._lock:
            self.active_connections.append(websocket)
        logger.info(
            "WebSocket client connected. Total clients: %d",
            len(self.active_connections),
        )

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections.remove(websocket)
        logger.info(
            "WebSocket client disconnected. Total clients: %d",
            len(self.active_connections),
        )

    async def broadcast_json(self, envelope: Dict[str, Any]):
        """Send ``envelope`` to every connected client.

        Clients that have gone away are dropped.
        """
        payload = json.dumps(envelope)
        stale: List[WebSocket] = []

        async with self._lock:
            connections = list(self.active_connections)

        for ws in connections:
            try:
                await ws.send_text(payload)
            except Exception:
                stale.append(ws)

        if stale:
            async with self._lock:
                for ws in stale:
                    if ws in self.active_connections:
                        self.active_connections.remove(ws)
            logger.info("Removed %d stale WebSocket connections", len(stale))

    @property
    def client_count(self) -> int:
        return len(self.active_connections)


class EventHub:
    """Fan-out of push envelopes to stream subscribers and websocket clients."""

    def __init__(self, manager: ConnectionManager, queue_size: int = 100):
        self.manager = manager
        self._queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, envelope: Dict[str, Any]) -> int:
        """Queue ``envelope`` for every subscriber; returns how many got it."""
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(envelope)
                delivered += 1
            except asyncio.QueueFull:
                # Slow consumer: it will see a gap, which the router tolerates
                logger.warning("Event subscriber queue full; dropping %s", envelope.get("type"))

        if self.manager.client_count:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("No event loop; websocket broadcast skipped")
            else:
                task = loop.create_task(self.manager.broadcast_json(envelope))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        return delivered
