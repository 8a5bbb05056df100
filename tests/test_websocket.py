"""Tests for WebSocket playback notifications.

Features:
- WebSocket connection management
- Lifecycle event to message mapping
- Connection lifecycle handling
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import WebSocket

from storyforge.api.websocket import (
    PlaybackNotifier,
    WebSocketManager,
    create_error_message,
    create_event_message,
    create_progress_message,
)
from storyforge.render.encoder import Artifact
from storyforge.render.player import RunEvent, RunEventType, RunMode


class TestWebSocketManager:
    """Tests for WebSocket connection manager."""

    @pytest.fixture
    def manager(self):
        """Create a WebSocket manager."""
        return WebSocketManager()

    @pytest.mark.asyncio
    async def test_connect_websocket(self, manager):
        """Test connecting a WebSocket client."""
        websocket = AsyncMock(spec=WebSocket)

        await manager.connect(websocket)

        assert websocket in manager._connections
        websocket.accept.assert_called_once()

    @pytest.mark.asyncio
    async def test_disconnect_websocket(self, manager):
        """Test disconnecting a WebSocket client."""
        websocket = AsyncMock(spec=WebSocket)

        await manager.connect(websocket)
        manager.disconnect(websocket)
        # Second disconnect is a no-op
        manager.disconnect(websocket)

        assert websocket not in manager._connections

    @pytest.mark.asyncio
    async def test_broadcast(self, manager):
        """Test broadcasting message to all clients."""
        ws1 = AsyncMock(spec=WebSocket)
        ws2 = AsyncMock(spec=WebSocket)

        await manager.connect(ws1)
        await manager.connect(ws2)

        message = {"type": "progress", "percent": 50}
        await manager.broadcast(message)

        ws1.send_json.assert_called_once_with(message)
        ws2.send_json.assert_called_once_with(message)

    @pytest.mark.asyncio
    async def test_broadcast_handles_disconnected_client(self, manager):
        """Test that broadcast drops clients that fail to receive."""
        ws1 = AsyncMock(spec=WebSocket)
        ws2 = AsyncMock(spec=WebSocket)

        # ws1 will raise exception on send
        ws1.send_json.side_effect = RuntimeError("Connection closed")

        await manager.connect(ws1)
        await manager.connect(ws2)

        message = {"type": "progress", "percent": 50}
        await manager.broadcast(message)

        # ws2 should still receive the message
        ws2.send_json.assert_called_once_with(message)
        assert manager.get_connection_count() == 1

    @pytest.mark.asyncio
    async def test_get_connection_count(self, manager):
        """Test getting connection count."""
        ws1 = AsyncMock(spec=WebSocket)
        ws2 = AsyncMock(spec=WebSocket)

        assert manager.get_connection_count() == 0

        await manager.connect(ws1)
        assert manager.get_connection_count() == 1

        await manager.connect(ws2)
        assert manager.get_connection_count() == 2

        manager.disconnect(ws1)
        assert manager.get_connection_count() == 1


class TestPlaybackNotifier:
    """Tests for the player listener."""

    @pytest.fixture
    def manager(self):
        """Create a mock WebSocket manager."""
        manager = MagicMock(spec=WebSocketManager)
        manager.broadcast = AsyncMock()
        manager.get_connection_count.return_value = 1
        return manager

    @pytest.fixture
    def notifier(self, manager):
        return PlaybackNotifier(manager)

    @pytest.mark.asyncio
    async def test_forwards_progress(self, notifier, manager):
        await notifier(RunEvent(RunEventType.PROGRESS, "run-1", RunMode.PREVIEW, percent=42.0, frames_rendered=7))

        manager.broadcast.assert_called_once()
        message = manager.broadcast.call_args[0][0]
        assert message["type"] == "progress"
        assert message["run_id"] == "run-1"
        assert message["percent"] == 42.0
        assert message["frames_rendered"] == 7

    @pytest.mark.asyncio
    async def test_skips_when_nobody_listens(self, notifier, manager):
        manager.get_connection_count.return_value = 0

        await notifier(RunEvent(RunEventType.STARTED, "run-1", RunMode.PREVIEW))

        manager.broadcast.assert_not_called()


class TestEventMessages:
    """Tests for message formats."""

    def test_progress_message_structure(self):
        message = create_progress_message("run-1", "export", 75.5, frames_rendered=68)

        assert message == {
            "type": "progress",
            "run_id": "run-1",
            "mode": "export",
            "percent": 75.5,
            "frames_rendered": 68,
        }

    def test_error_message_structure(self):
        message = create_error_message("run-1", "export", "Encoding failed", "ENCODER_FAILED")

        assert message["type"] == "failed"
        assert message["error_message"] == "Encoding failed"
        assert message["error_code"] == "ENCODER_FAILED"

    def test_failed_event(self):
        event = RunEvent(
            RunEventType.FAILED,
            "run-1",
            RunMode.EXPORT,
            error_message="This runtime does not support video recording",
            error_code="EXPORT_NOT_SUPPORTED",
        )
        message = create_event_message(event)

        assert message["type"] == "failed"
        assert message["mode"] == "export"
        assert message["error_code"] == "EXPORT_NOT_SUPPORTED"

    def test_completed_event_with_artifact(self):
        artifact = Artifact(data=b"\x00" * 10, mime_type="video/webm;codecs=vp9", extension="webm")
        event = RunEvent(RunEventType.COMPLETED, "run-1", RunMode.EXPORT, percent=100.0, artifact=artifact)

        message = create_event_message(event)

        assert message["type"] == "completed"
        assert message["percent"] == 100.0
        assert message["artifact"] == {
            "mime_type": "video/webm;codecs=vp9",
            "extension": "webm",
            "size_bytes": 10,
        }

    def test_cancelled_event_has_no_artifact(self):
        message = create_event_message(RunEvent(RunEventType.CANCELLED, "run-1", RunMode.PREVIEW))
        assert message["type"] == "cancelled"
        assert "artifact" not in message
