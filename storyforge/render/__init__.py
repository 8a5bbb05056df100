from storyforge.render.compositor import FrameCompositor, aspect_fill_rect
from storyforge.render.encoder import Artifact, EncoderSession, VideoEncoder
from storyforge.render.image_resolver import ImageResolutionFailure, ImageResolver, ResolvedImage
from storyforge.render.player import (
    PlaybackRun,
    PlayerState,
    RunEvent,
    RunEventType,
    RunMode,
    RunOutcome,
    RunResult,
    TimelinePlayer,
)
from storyforge.render.text_wrap import draw_wrapped_text, wrap_text

__all__ = [
    "Artifact",
    "EncoderSession",
    "FrameCompositor",
    "ImageResolutionFailure",
    "ImageResolver",
    "PlaybackRun",
    "PlayerState",
    "ResolvedImage",
    "RunEvent",
    "RunEventType",
    "RunMode",
    "RunOutcome",
    "RunResult",
    "TimelinePlayer",
    "VideoEncoder",
    "aspect_fill_rect",
    "draw_wrapped_text",
    "wrap_text",
]
