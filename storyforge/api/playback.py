"""Playback API endpoints - preview, export, progress and downloads."""

import asyncio
import logging
from io import BytesIO

from fastapi import APIRouter, Response, WebSocket, status
from starlette.websockets import WebSocketDisconnect

from storyforge.api.deps import Connections, Player
from storyforge.config import get_settings
from storyforge.exceptions import ArtifactNotFoundError
from storyforge.render.player import PlaybackRun, RunMode, TimelinePlayer
from storyforge.schemas.playback import (
    ArtifactInfo,
    PlaybackRunResponse,
    PlaybackStatusResponse,
    StopResponse,
    TimelineRequest,
)
from storyforge.schemas.scene import Scene, Timeline, create_default_timeline

router = APIRouter()
logger = logging.getLogger(__name__)


def _run_response(run: PlaybackRun) -> PlaybackRunResponse:
    return PlaybackRunResponse(**run.to_dict())


def _png_response(image) -> Response:
    buffer = BytesIO()
    image.save(buffer, "PNG")
    return Response(content=buffer.getvalue(), media_type="image/png")


@router.get("/playback/default-timeline", response_model=Timeline)
async def get_default_timeline() -> Timeline:
    """Starter scenes for a new project."""
    return create_default_timeline()


@router.post(
    "/playback/preview",
    response_model=PlaybackRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_preview(request: TimelineRequest, player: Player) -> PlaybackRunResponse:
    """Start playing the timeline into the live surface.

    If a preview is already running it keeps running and is returned as-is.
    """
    run = await player.start(request.scenes, RunMode.PREVIEW, request.fps)
    return _run_response(run)


@router.post("/playback/stop", response_model=StopResponse)
async def stop_preview(player: Player) -> StopResponse:
    """Stop the running preview before its next frame."""
    return StopResponse(stopped=player.stop())


@router.post(
    "/playback/export",
    response_model=PlaybackRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_export(request: TimelineRequest, player: Player) -> PlaybackRunResponse:
    """Start exporting the timeline to a video file.

    A running preview is stopped first. Follow progress with
    ``GET /playback/status`` or the WebSocket, then download the result
    from ``GET /playback/artifact``.
    """
    run = await player.start(request.scenes, RunMode.EXPORT, request.fps)
    return _run_response(run)


@router.get("/playback/status", response_model=PlaybackStatusResponse)
async def get_status(player: Player) -> PlaybackStatusResponse:
    return build_status(player)


def build_status(player: TimelinePlayer) -> PlaybackStatusResponse:
    active = player.active_run
    last = player.last_result
    artifact = player.artifact
    return PlaybackStatusResponse(
        state=player.state.value,
        progress=player.progress,
        active_run=_run_response(active) if active else None,
        last_outcome=last.outcome.value if last else None,
        last_error=last.error_message if last else None,
        artifact=ArtifactInfo(**artifact.to_dict()) if artifact else None,
    )


@router.get("/playback/frame")
async def get_live_frame(player: Player) -> Response:
    """Current contents of the live surface as PNG."""
    frame = player.surface.copy()
    return await asyncio.to_thread(_png_response, frame)


@router.post("/playback/still")
async def render_still(scene: Scene, player: Player) -> Response:
    """Render one scene to PNG without touching the live surface."""
    frame = await player.compositor.render_frame(scene)
    return await asyncio.to_thread(_png_response, frame)


@router.get("/playback/artifact")
async def download_artifact(player: Player) -> Response:
    artifact = player.artifact
    if artifact is None:
        raise ArtifactNotFoundError()
    filename = f"{get_settings().export_filename_stem}.{artifact.extension}"
    return Response(
        content=artifact.data,
        media_type=artifact.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.delete("/playback/artifact", status_code=status.HTTP_204_NO_CONTENT)
async def release_artifact(player: Player) -> Response:
    if player.release_artifact() is None:
        raise ArtifactNotFoundError()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.websocket("/playback/ws")
async def playback_events(websocket: WebSocket, connections: Connections) -> None:
    """Push lifecycle notifications (started, progress, cancelled, completed, failed)."""
    await connections.connect(websocket)
    try:
        while True:
            # Clients only listen; reading detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        connections.disconnect(websocket)
