"""WebSocket support for real-time playback notifications.

This module provides:
- WebSocketManager: Manages connected editor clients
- PlaybackNotifier: Player listener that forwards lifecycle events
- Message creation helpers: Standardized message formats
"""

from typing import Any, Optional

from fastapi import WebSocket

from storyforge.render.player import RunEvent, RunEventType


class WebSocketManager:
    """Manages WebSocket connections for playback updates.

    Every client sees every run: there is only one player surface.
    """

    def __init__(self):
        self._connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        """Accept and register a WebSocket connection."""
        await websocket.accept()
        self._connections.append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        if websocket in self._connections:
            self._connections.remove(websocket)

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Broadcast a message to all connected clients."""
        disconnected = []
        for websocket in list(self._connections):
            try:
                await websocket.send_json(message)
            except Exception:
                # Client disconnected
                disconnected.append(websocket)

        for ws in disconnected:
            self.disconnect(ws)

    def get_connection_count(self) -> int:
        """Get the number of connected clients."""
        return len(self._connections)


class PlaybackNotifier:
    """Translates player lifecycle events into client messages."""

    def __init__(self, manager: WebSocketManager):
        self._manager = manager

    async def __call__(self, event: RunEvent) -> None:
        if not self._manager.get_connection_count():
            return
        await self._manager.broadcast(create_event_message(event))


def create_event_message(event: RunEvent) -> dict[str, Any]:
    """Create a standardized message for a lifecycle event."""
    if event.type == RunEventType.PROGRESS:
        return create_progress_message(event.run_id, event.mode.value, event.percent, event.frames_rendered)
    if event.type == RunEventType.FAILED:
        return create_error_message(
            event.run_id, event.mode.value, event.error_message or "Run failed", event.error_code
        )
    message = {
        "type": event.type.value,
        "run_id": event.run_id,
        "mode": event.mode.value,
        "percent": event.percent,
        "frames_rendered": event.frames_rendered,
    }
    if event.artifact is not None:
        message["artifact"] = event.artifact.to_dict()
    return message


def create_progress_message(
    run_id: str,
    mode: str,
    percent: float,
    frames_rendered: int = 0,
) -> dict[str, Any]:
    """Create a standardized progress message."""
    return {
        "type": "progress",
        "run_id": run_id,
        "mode": mode,
        "percent": percent,
        "frames_rendered": frames_rendered,
    }


def create_error_message(
    run_id: str,
    mode: str,
    error_message: str,
    error_code: Optional[str] = None,
) -> dict[str, Any]:
    """Create a standardized error message."""
    return {
        "type": "failed",
        "run_id": run_id,
        "mode": mode,
        "error_message": error_message,
        "error_code": error_code,
    }
