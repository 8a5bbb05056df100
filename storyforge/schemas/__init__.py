from storyforge.schemas.scene import (
    Background,
    ImageBackground,
    Scene,
    SolidBackground,
    Timeline,
    create_default_timeline,
    frame_count,
)

__all__ = [
    "Background",
    "ImageBackground",
    "Scene",
    "SolidBackground",
    "Timeline",
    "create_default_timeline",
    "frame_count",
]
