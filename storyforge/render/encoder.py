"""Video encoder adapter built on an FFmpeg subprocess.

A session wraps the live compositing surface: every ``capture()`` sends the
surface's current pixels to FFmpeg as one raw RGBA frame, and the encoded
container bytes are drained from FFmpeg's stdout as they appear. Chunks are
kept in arrival order and joined into a single artifact on ``finalize()``.
"""

import asyncio
import logging
import re
from collections import deque
from dataclasses import dataclass
from typing import Optional

from PIL import Image

from storyforge.config import get_settings
from storyforge.exceptions import EncoderError, ExportNotSupportedError

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 64 * 1024
STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class CodecCandidate:
    """One codec/container combination the exporter may use."""

    mime_type: str
    encoder: str  # FFmpeg encoder name
    container: str  # FFmpeg muxer name
    extension: str
    extra_args: tuple[str, ...] = ()


# Preference order: royalty-free WebM first, then MP4 for compatibility.
CODEC_CANDIDATES: tuple[CodecCandidate, ...] = (
    CodecCandidate(
        mime_type="video/webm;codecs=vp9",
        encoder="libvpx-vp9",
        container="webm",
        extension="webm",
        extra_args=("-deadline", "realtime", "-cpu-used", "8", "-row-mt", "1"),
    ),
    CodecCandidate(
        mime_type="video/webm;codecs=vp8",
        encoder="libvpx",
        container="webm",
        extension="webm",
        extra_args=("-deadline", "realtime", "-cpu-used", "8"),
    ),
    CodecCandidate(
        mime_type="video/mp4;codecs=avc1",
        encoder="libx264",
        container="mp4",
        extension="mp4",
        extra_args=("-preset", "veryfast", "-movflags", "frag_keyframe+empty_moov"),
    ),
    # FFmpeg's native MPEG-4 encoder is always built in
    CodecCandidate(
        mime_type="video/mp4",
        encoder="mpeg4",
        container="mp4",
        extension="mp4",
        extra_args=("-movflags", "frag_keyframe+empty_moov"),
    ),
)

_ENCODER_LINE = re.compile(r"^\s*V[A-Z.]{5}\s+(\S+)")


@dataclass(frozen=True)
class Artifact:
    """A finished, encoded video."""

    data: bytes
    mime_type: str
    extension: str

    @property
    def size(self) -> int:
        return len(self.data)

    def to_dict(self) -> dict[str, object]:
        """Serialize metadata (not the bytes)."""
        return {
            "mime_type": self.mime_type,
            "extension": self.extension,
            "size_bytes": self.size,
        }


def parse_video_encoders(output: str) -> set[str]:
    """Extract video encoder names from ``ffmpeg -encoders`` output."""
    names = set()
    for line in output.splitlines():
        match = _ENCODER_LINE.match(line)
        if match and match.group(1) != "=":
            names.add(match.group(1))
    return names


class EncoderSession:
    """A live FFmpeg encode of one surface."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        surface: Image.Image,
        codec: CodecCandidate,
    ):
        self.process = process
        self.surface = surface
        self.codec = codec
        self.frames_written = 0
        self._chunks: list[bytes] = []
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stdout_task = asyncio.create_task(self._drain_stdout())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._closed = False

    async def _drain_stdout(self) -> None:
        assert self.process.stdout is not None
        while True:
            chunk = await self.process.stdout.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            self._chunks.append(chunk)

    async def _drain_stderr(self) -> None:
        assert self.process.stderr is not None
        async for raw in self.process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)

    def _error_message(self, fallback: str) -> str:
        return "\n".join(self._stderr_tail) or fallback

    async def capture(self) -> None:
        """Send the surface's current pixels as the next frame."""
        if self._closed:
            raise EncoderError("Encoder session is already closed")
        if self.process.returncode is not None:
            raise EncoderError(
                self._error_message(f"FFmpeg exited early with code {self.process.returncode}")
            )

        assert self.process.stdin is not None
        try:
            self.process.stdin.write(self.surface.tobytes())
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            await self.process.wait()
            await self._stderr_task
            raise EncoderError(self._error_message(f"FFmpeg stopped accepting frames: {e}")) from e
        self.frames_written += 1

    async def finalize(self) -> Artifact:
        """End the stream, wait for FFmpeg to flush, and return the artifact."""
        if self._closed:
            raise EncoderError("Encoder session is already closed")
        self._closed = True

        assert self.process.stdin is not None
        try:
            self.process.stdin.close()
            await self.process.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass  # exit code below reports the real failure

        await asyncio.gather(self._stdout_task, self._stderr_task)
        returncode = await self.process.wait()
        if returncode != 0:
            self._chunks.clear()
            raise EncoderError(self._error_message(f"FFmpeg exited with code {returncode}"))

        data = b"".join(self._chunks)
        self._chunks.clear()
        logger.info(
            f"[ENCODER] Finalized {self.frames_written} frames, "
            f"{len(data)} bytes ({self.codec.mime_type})"
        )
        return Artifact(data=data, mime_type=self.codec.mime_type, extension=self.codec.extension)

    async def abort(self) -> None:
        """Stop FFmpeg and discard anything encoded so far."""
        self._closed = True
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
        await self.process.wait()
        for task in (self._stdout_task, self._stderr_task):
            task.cancel()
        await asyncio.gather(self._stdout_task, self._stderr_task, return_exceptions=True)
        self._chunks.clear()
        logger.info("[ENCODER] Session aborted, partial output discarded")


class VideoEncoder:
    """Selects a supported codec and starts encoder sessions."""

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        video_bitrate: Optional[str] = None,
        candidates: tuple[CodecCandidate, ...] = CODEC_CANDIDATES,
    ):
        settings = get_settings()
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.video_bitrate = video_bitrate or settings.export_video_bitrate
        self.candidates = candidates
        self._available: Optional[set[str]] = None

    async def available_encoders(self) -> set[str]:
        """Video encoders compiled into the local FFmpeg (cached)."""
        if self._available is not None:
            return self._available
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ffmpeg_path,
                "-hide_banner",
                "-encoders",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await proc.communicate()
        except OSError as e:
            logger.warning(f"[ENCODER] FFmpeg not available at {self.ffmpeg_path}: {e}")
            self._available = set()
            return self._available

        if proc.returncode != 0:
            logger.warning(f"[ENCODER] 'ffmpeg -encoders' exited with {proc.returncode}")
            self._available = set()
        else:
            self._available = parse_video_encoders(stdout.decode("utf-8", errors="replace"))
        return self._available

    async def select_codec(self) -> Optional[CodecCandidate]:
        """First candidate in preference order that this host can encode."""
        available = await self.available_encoders()
        for candidate in self.candidates:
            if candidate.encoder in available:
                return candidate
        return None

    def build_command(self, codec: CodecCandidate, width: int, height: int, fps: int) -> list[str]:
        """Build the FFmpeg command for raw RGBA frames in, container bytes out."""
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-f", "rawvideo",
            "-pix_fmt", "rgba",
            "-s", f"{width}x{height}",
            "-r", str(fps),
            "-i", "pipe:0",
            "-an",
            "-c:v", codec.encoder,
            "-b:v", self.video_bitrate,
            *codec.extra_args,
            "-pix_fmt", "yuv420p",
            "-f", codec.container,
            "pipe:1",
        ]

    async def start_session(self, surface: Image.Image, fps: int) -> EncoderSession:
        """Start encoding ``surface`` at ``fps``.

        Raises:
            ExportNotSupportedError: No candidate codec is available
            EncoderError: FFmpeg could not be started
        """
        codec = await self.select_codec()
        if codec is None:
            raise ExportNotSupportedError()
        if surface.mode != "RGBA":
            raise EncoderError(f"Surface must be RGBA, got {surface.mode}")

        width, height = surface.size
        cmd = self.build_command(codec, width, height, fps)
        logger.info(f"[ENCODER] Starting {codec.mime_type}: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncoderError(f"Unable to start FFmpeg: {e}") from e
        return EncoderSession(process, surface, codec)
