"""
Pytest fixtures for storyforge tests.

The player is exercised with a fake clock, a recording compositor and a fake
encoder so timing tests run instantly and do not need FFmpeg. Tests that
drive the real FFmpeg binary are marked ``requires_ffmpeg`` and skipped when
it is not installed.
"""

import asyncio
import base64
import shutil
from io import BytesIO

import pytest
from PIL import Image

from storyforge.exceptions import EncoderError, ExportNotSupportedError
from storyforge.render.encoder import Artifact
from storyforge.render.player import TimelinePlayer
from storyforge.schemas.scene import Scene


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring a local ffmpeg binary (skipped when absent)"
    )


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None,
    reason="ffmpeg not installed"
)


def make_png_bytes(width: int, height: int, color=(255, 0, 0, 255)) -> bytes:
    """Encode a solid-colour PNG."""
    buffer = BytesIO()
    Image.new("RGBA", (width, height), color).save(buffer, "PNG")
    return buffer.getvalue()


def make_png_data_url(width: int, height: int, color=(255, 0, 0, 255)) -> str:
    payload = base64.b64encode(make_png_bytes(width, height, color)).decode("ascii")
    return f"data:image/png;base64,{payload}"


class FakeClock:
    """Monotonic clock that only moves when slept on (or advanced by hand)."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Let other tasks run, like a real sleep would
        await asyncio.sleep(0)


class RecordingCompositor:
    """Compositor stand-in that records which scene each frame showed."""

    def __init__(self, clock: FakeClock | None = None, frame_cost_s: float = 0.0):
        self.size = (64, 36)
        self.calls: list[str] = []
        self.resets = 0
        self._clock = clock
        self._frame_cost_s = frame_cost_s

    def new_surface(self) -> Image.Image:
        return Image.new("RGBA", self.size, (0, 0, 0, 0))

    def reset(self) -> None:
        self.resets += 1

    async def composite(self, surface: Image.Image, scene: Scene) -> None:
        self.calls.append(scene.title)
        # Encode the frame number into the surface so captures can be checked
        surface.paste((len(self.calls) % 256, 0, 0, 255), (0, 0, *self.size))
        if self._clock is not None:
            self._clock.advance(self._frame_cost_s)

    async def render_frame(self, scene: Scene) -> Image.Image:
        frame = self.new_surface()
        await self.composite(frame, scene)
        return frame


class FakeSession:
    """Encoder session that keeps captured frame markers in memory."""

    def __init__(self, surface: Image.Image, fail_at: int | None = None):
        self.surface = surface
        self.fail_at = fail_at
        self.frames: list[int] = []
        self.finalized = False
        self.aborted = False

    async def capture(self) -> None:
        if self.fail_at is not None and len(self.frames) == self.fail_at:
            raise EncoderError("encoder exploded: out of buffers")
        self.frames.append(self.surface.getpixel((0, 0))[0])

    async def finalize(self) -> Artifact:
        self.finalized = True
        return Artifact(
            data=bytes(self.frames),
            mime_type="video/webm;codecs=vp9",
            extension="webm",
        )

    async def abort(self) -> None:
        self.aborted = True


class FakeEncoder:
    """Encoder stand-in; set ``supported`` / ``fail_at`` to script failures."""

    def __init__(self):
        self.supported = True
        self.fail_at: int | None = None
        self.sessions: list[FakeSession] = []

    async def start_session(self, surface: Image.Image, fps: int) -> FakeSession:
        if not self.supported:
            raise ExportNotSupportedError()
        session = FakeSession(surface, self.fail_at)
        self.sessions.append(session)
        return session


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_compositor(fake_clock) -> RecordingCompositor:
    return RecordingCompositor(clock=fake_clock)


@pytest.fixture
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def player(recording_compositor, fake_encoder, fake_clock) -> TimelinePlayer:
    """Player wired to fakes, running at 30 fps."""
    return TimelinePlayer(
        compositor=recording_compositor,
        encoder=fake_encoder,
        fps=30,
        sleep=fake_clock.sleep,
        clock=fake_clock,
    )


@pytest.fixture
def png_data_url() -> str:
    """A 16:9 red PNG as a data URL."""
    return make_png_data_url(64, 36)
