"""
Live update connection registry for the marketplace gateway.

Each connection is bound to at most one feed. The registry is mutated by
three independent triggers (connect/close, client messages, the liveness
timer); all mutations go through the lock and readers iterate over
snapshots, so nothing is removed or notified twice.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from starlette.websockets import WebSocketState

from shared.logging import get_logger
from shared.metrics import MetricsCollector

SEND_TIMEOUT = 5.0


class ConnectionLimitExceeded(Exception):
    """Raised when the registry is full."""


@dataclass
class LiveConnection:
    """Live update connection data."""
    connection_id: str
    websocket: Any
    feed_id: Optional[str] = None
    subscription_id: Optional[str] = None
    credential_id: Optional[str] = None
    is_alive: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _is_open(websocket: Any) -> bool:
    for attr in ("client_state", "application_state"):
        if getattr(websocket, attr, None) == WebSocketState.DISCONNECTED:
            return False
    return True


def now_ms() -> int:
    return int(time.time() * 1000)


class LiveUpdateBroadcaster:
    """Registry of live connections with feed fan-out and liveness probing."""

    def __init__(self, heartbeat_interval: float = 30.0, max_connections: int = 1000,
                 metrics: Optional[MetricsCollector] = None):
        self.heartbeat_interval = heartbeat_interval
        self.max_connections = max_connections
        self.metrics = metrics
        self.logger = get_logger("marketplace.ws.broadcaster")

        self._connections: Dict[str, LiveConnection] = {}
        self._lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        """Start the liveness loop."""
        self.running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self.logger.info("Live update broadcaster started", heartbeat_interval=self.heartbeat_interval)

    async def stop(self):
        """Stop the liveness loop and close every connection."""
        self.running = False
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        for connection in await self.snapshot():
            await self.remove_connection(connection.connection_id)

        self.logger.info("Live update broadcaster stopped")

    async def add_connection(self, websocket: Any) -> LiveConnection:
        async with self._lock:
            if len(self._connections) >= self.max_connections:
                raise ConnectionLimitExceeded(f"Maximum connections ({self.max_connections}) exceeded")
            connection = LiveConnection(connection_id=str(uuid.uuid4()), websocket=websocket)
            self._connections[connection.connection_id] = connection
            total = len(self._connections)

        self._update_gauge(total)
        self.logger.info("Live connection added", connection_id=connection.connection_id, total_connections=total)
        return connection

    async def remove_connection(self, connection_id: str, close: bool = True) -> bool:
        """Remove a connection. Returns False when it was already gone."""
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            total = len(self._connections)
        if connection is None:
            return False

        if close and _is_open(connection.websocket):
            try:
                await connection.websocket.close()
            except Exception as e:
                self.logger.debug("Error closing live connection", connection_id=connection_id, error=str(e))

        self._update_gauge(total)
        self.logger.info("Live connection removed", connection_id=connection_id, total_connections=total)
        return True

    async def bind(self, connection_id: str, feed_id: str, subscription_id: Optional[str] = None,
                   credential_id: Optional[str] = None) -> bool:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            connection.feed_id = feed_id
            connection.subscription_id = subscription_id
            connection.credential_id = credential_id

        self.logger.info("Live connection bound", connection_id=connection_id, feed_id=feed_id,
                         subscription_id=subscription_id, credential_id=credential_id)
        return True

    async def unbind(self, connection_id: str) -> bool:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            connection.feed_id = None
            connection.subscription_id = None
            connection.credential_id = None
        return True

    def mark_alive(self, connection_id: str):
        connection = self._connections.get(connection_id)
        if connection:
            connection.is_alive = True

    def get_connection(self, connection_id: str) -> Optional[LiveConnection]:
        return self._connections.get(connection_id)

    async def snapshot(self) -> List[LiveConnection]:
        async with self._lock:
            return list(self._connections.values())

    def __len__(self) -> int:
        return len(self._connections)

    async def send(self, connection: LiveConnection, message: Dict[str, Any]) -> bool:
        """Send one message; closed or failing transports are skipped."""
        if not _is_open(connection.websocket):
            return False
        try:
            await asyncio.wait_for(
                connection.websocket.send_text(json.dumps(message, default=str)),
                timeout=SEND_TIMEOUT
            )
        except Exception as e:
            self.logger.warning("Failed to send live message", connection_id=connection.connection_id,
                                type=message.get("type"), error=str(e) or type(e).__name__)
            return False

        if self.metrics:
            self.metrics.increment_counter("messages_sent_total", type=message.get("type", "unknown"))
        return True

    async def notify(self, feed_id: str, payload: Any) -> int:
        """Push ``payload`` to every connection bound to ``feed_id``."""
        targets = [c for c in await self.snapshot() if c.feed_id == feed_id]
        if not targets:
            return 0

        message = {"type": "data", "feedId": feed_id, "data": payload, "timestamp": now_ms()}
        results = await asyncio.gather(*(self.send(c, message) for c in targets))
        delivered = sum(1 for ok in results if ok)

        self.logger.info("Feed update broadcast", feed_id=feed_id, delivered=delivered,
                         skipped=len(targets) - delivered)
        return delivered

    async def check_liveness(self) -> List[str]:
        """One probe cycle.

        Connections that did not answer the previous probe are removed; the
        rest are marked pending and probed again.
        """
        removed = []
        for connection in await self.snapshot():
            if not connection.is_alive:
                if await self.remove_connection(connection.connection_id):
                    removed.append(connection.connection_id)
                continue
            connection.is_alive = False
            await self.send(connection, {"type": "ping", "timestamp": now_ms()})

        if removed:
            self.logger.info("Removed unresponsive live connections", count=len(removed))
        return removed

    async def _heartbeat_loop(self):
        while self.running:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.check_liveness()
            except Exception as e:
                self.logger.error("Error in liveness loop", error=str(e))

    def _update_gauge(self, total: int):
        if self.metrics:
            self.metrics.set_gauge("active_connections", total)
