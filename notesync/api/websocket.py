"""WebSocket manager for real-time updates.

Sync progress events, shutdown notices and log lines are pushed to every
connected client as JSON messages.
"""

import json
import logging
from datetime import datetime
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and message broadcasting."""

    def __init__(self):
        """Initialize the connection manager."""
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket client connected. Total connections: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection from active connections."""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"WebSocket client disconnected. Total connections: {len(self.active_connections)}")

    async def send_personal_message(self, message: dict[str, Any], websocket: WebSocket) -> None:
        """Send a message to a specific client."""
        try:
            await websocket.send_json(message)
        except Exception as e:  # pylint: disable=broad-except
            logger.error(f"Failed to send personal message: {e}")
            self.disconnect(websocket)

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Broadcast a message to all connected clients."""
        disconnected = []

        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:  # pylint: disable=broad-except
                logger.error(f"Failed to broadcast to client: {e}")
                disconnected.append(connection)

        # Clean up disconnected clients
        for connection in disconnected:
            self.disconnect(connection)


# Global connection manager instance
manager = ConnectionManager()


def create_message(message_type: str, data: dict[str, Any]) -> dict[str, Any]:
    """Create a standardized WebSocket message.

    Args:
        message_type: Event name (syncStarted, syncProgress, log_entry, ...)
        data: Message payload

    Returns:
        Formatted message dictionary
    """
    return {
        "type": message_type,
        "data": data,
        "timestamp": datetime.now().isoformat(),
    }


async def notify_ui(event: str, payload: dict[str, Any]) -> None:
    """Forward a sync engine event to every connected client."""
    await manager.broadcast(create_message(event, payload))


async def send_log_entry(component: str, level: str, message: str) -> None:
    """Send a log entry to all clients."""
    await manager.broadcast(
        create_message("log_entry", {"component": component, "level": level, "message": message})
    )


async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint handler."""
    await manager.connect(websocket)

    try:
        await manager.send_personal_message(
            {
                "type": "connection",
                "status": "connected",
                "message": "Connected to NoteSync API",
                "timestamp": datetime.now().isoformat(),
            },
            websocket,
        )

        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await manager.send_personal_message(create_message("error", {"message": "Invalid JSON format"}), websocket)
                continue

            message_type = message.get("type") if isinstance(message, dict) else None
            if message_type == "ping":
                await manager.send_personal_message(create_message("pong", {}), websocket)
            else:
                await manager.send_personal_message(
                    create_message("error", {"message": f"Unknown message type: {message_type}"}),
                    websocket,
                )

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:  # pylint: disable=broad-except
        logger.error(f"WebSocket error: {e}")
        manager.disconnect(websocket)
