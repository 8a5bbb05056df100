"""Scene timeline model.

Scenes and timelines are frozen: a run works from a snapshot taken when it
starts, so an editor may keep changing its own copy while frames are drawn.
"""

import math
from collections.abc import Iterable
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _new_scene_id() -> str:
    return uuid4().hex


class SolidBackground(BaseModel):
    """Fill the whole frame with one colour (any CSS colour Pillow can parse)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["color"] = "color"
    value: str = "#111827"


class ImageBackground(BaseModel):
    """Draw an image (data URL, http(s) URL or local path) aspect-filled."""

    model_config = ConfigDict(frozen=True)

    type: Literal["image"] = "image"
    reference: str = ""


Background = Annotated[Union[SolidBackground, ImageBackground], Field(discriminator="type")]


class Scene(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_scene_id)
    title: str = ""
    subtitle: str = ""
    duration: float = Field(default=3.0, allow_inf_nan=False)  # seconds
    background: Background = Field(default_factory=SolidBackground)


class Timeline(BaseModel):
    """Ordered scenes, in playback order."""

    model_config = ConfigDict(frozen=True)

    scenes: tuple[Scene, ...] = ()

    @classmethod
    def snapshot(cls, scenes: "Timeline | Iterable[Scene]") -> "Timeline":
        """Detach a timeline from the caller's collection."""
        if isinstance(scenes, Timeline):
            scenes = scenes.scenes
        return cls(scenes=tuple(scene.model_copy(deep=True) for scene in scenes))

    @property
    def total_duration_ms(self) -> float:
        return sum(scene.duration * 1000 for scene in self.scenes)

    def total_frames(self, fps: int) -> int:
        return sum(frame_count(scene.duration, fps) for scene in self.scenes)

    def __len__(self) -> int:
        return len(self.scenes)


def frame_count(duration: float, fps: int) -> int:
    """Frames needed to show a scene for ``duration`` seconds (at least one).

    Rounds half up, so 0.5 s at 45 fps gives 23 frames, not 22.
    """
    return max(1, math.floor(duration * fps + 0.5))


def create_default_timeline() -> Timeline:
    """Starter scenes shown to a new project."""
    return Timeline(
        scenes=(
            Scene(
                title="Welcome to Your Story",
                subtitle="Craft a narrative with visuals and motion in seconds.",
                duration=3,
                background=SolidBackground(value="#111827"),
            ),
            Scene(
                title="Add Your Highlights",
                subtitle="Combine images, captions, and pacing to match your voice.",
                duration=3,
                background=SolidBackground(value="#1f2937"),
            ),
            Scene(
                title="Download and Share",
                subtitle="Export your cinematic summary as a shareable video.",
                duration=3,
                background=SolidBackground(value="#312e81"),
            ),
        )
    )
