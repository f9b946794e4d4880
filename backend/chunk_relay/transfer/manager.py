"""WebSocket connection manager for transfer peers.

This module owns the transport side of the relay: it accepts WebSocket
connections, assigns each one a backend-generated connection ID, and sends
the deliveries produced by the TransferEngine to the right sockets.

It holds no protocol state. Which connection is a sender or a receiver, and
for which transfer, is the engine's business.

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.

Delivery Notes:
    - Deliveries are sent one after another in the order the engine produced
      them, so a relayed chunk always reaches the receiver before the
      sender's acknowledgement is sent.
    - Sends to a departed or broken connection are logged and dropped; the
      connection is forgotten and its own receive loop handles the disconnect.
"""
import logging
import uuid
from typing import Dict, Iterable, Optional

from fastapi import WebSocket

from .engine import Delivery
from .schemas import OutboundEvent

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Maps connection IDs to live WebSockets and delivers outbound events."""

    def __init__(self) -> None:
        # connection_id -> WebSocket
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a WebSocket and assign it a connection ID.

        SECURITY: The connection ID is generated here, never taken from the client.

        Returns:
            The backend-generated connection ID.
        """
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.active_connections[connection_id] = websocket
        return connection_id

    def disconnect(self, connection_id: str) -> Optional[WebSocket]:
        """Forget a connection (no-op if already gone)."""
        return self.active_connections.pop(connection_id, None)

    def get_connection_count(self) -> int:
        return len(self.active_connections)

    async def send(self, connection_id: str, event: OutboundEvent) -> bool:
        """Send one event to one connection.

        Returns:
            True if sent, False if the connection is unknown or the send failed.
        """
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            logger.debug(f"Dropping {event.type} for unknown connection {connection_id}")
            return False

        if await self._safe_send(websocket, event.to_wire()):
            return True

        self.disconnect(connection_id)
        logger.debug(f"Removed dead connection {connection_id}")
        return False

    async def deliver(self, deliveries: Iterable[Delivery]) -> None:
        """Send engine deliveries strictly in order."""
        for delivery in deliveries:
            await self.send(delivery.connection_id, delivery.event)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Args:
            connection: The WebSocket to send to.
            message: JSON-serializable message to send.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False
