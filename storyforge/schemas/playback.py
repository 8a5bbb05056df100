from datetime import datetime

from pydantic import BaseModel, Field

from storyforge.schemas.scene import Scene


class TimelineRequest(BaseModel):
    scenes: list[Scene] = Field(default_factory=list)
    fps: int | None = Field(default=None, ge=1, le=120)


class PlaybackRunResponse(BaseModel):
    id: str
    mode: str
    frame_rate: int
    started_at: datetime
    progress: float
    frames_rendered: int
    total_frames: int
    scene_count: int


class ArtifactInfo(BaseModel):
    mime_type: str
    extension: str
    size_bytes: int


class PlaybackStatusResponse(BaseModel):
    state: str  # idle, running, failed
    progress: float
    active_run: PlaybackRunResponse | None = None
    last_outcome: str | None = None  # completed, cancelled, failed
    last_error: str | None = None
    artifact: ArtifactInfo | None = None


class StopResponse(BaseModel):
    stopped: bool
