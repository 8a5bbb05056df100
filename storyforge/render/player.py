"""Timeline playback and export.

Drives the frame compositor across every scene at a fixed frame rate, in
one of two modes:

- preview: frames go to the live surface only, and the run can be stopped
- export: an encoder session captures every frame; once started the run
  always plays to the end and is then finalized into an artifact

Only one run may own the surface at a time. Starting an export cancels an
active preview and waits for it to tear down first.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union
from uuid import uuid4

from PIL import Image

from storyforge.config import get_settings
from storyforge.exceptions import PlaybackConflictError, StoryforgeError
from storyforge.render.compositor import FrameCompositor
from storyforge.render.encoder import Artifact, EncoderSession, VideoEncoder
from storyforge.schemas.scene import Scene, Timeline, frame_count

logger = logging.getLogger(__name__)


class RunMode(Enum):
    """What a run does with its frames."""

    PREVIEW = "preview"
    EXPORT = "export"


class PlayerState(Enum):
    """Player state machine."""

    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


class RunOutcome(Enum):
    """Terminal state of a run."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RunEventType(Enum):
    """Lifecycle notifications sent to listeners."""

    STARTED = "started"
    PROGRESS = "progress"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RunEvent:
    """A lifecycle notification."""

    type: RunEventType
    run_id: str
    mode: RunMode
    percent: float = 0.0
    frames_rendered: int = 0
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    artifact: Optional[Artifact] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "mode": self.mode.value,
            "percent": self.percent,
            "frames_rendered": self.frames_rendered,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "artifact": self.artifact.to_dict() if self.artifact else None,
        }


RunListener = Callable[[RunEvent], Union[None, Awaitable[None]]]


@dataclass
class PlaybackRun:
    """One execution of the timeline, from start to a terminal state."""

    mode: RunMode
    timeline: Timeline
    frame_rate: int
    id: str = field(default_factory=lambda: str(uuid4()))
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cancel_requested: bool = False
    elapsed_ms: float = 0.0
    progress: float = 0.0
    frames_rendered: int = 0
    session: Optional[EncoderSession] = None
    task: Optional["asyncio.Task[Optional[RunResult]]"] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def total_frames(self) -> int:
        return self.timeline.total_frames(self.frame_rate)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "mode": self.mode.value,
            "frame_rate": self.frame_rate,
            "started_at": self.started_at.isoformat(),
            "progress": self.progress,
            "frames_rendered": self.frames_rendered,
            "total_frames": self.total_frames,
            "scene_count": len(self.timeline),
        }


@dataclass
class RunResult:
    """How a run ended."""

    run_id: str
    mode: RunMode
    outcome: RunOutcome
    progress: float
    frames_rendered: int
    artifact: Optional[Artifact] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None


def compute_progress(elapsed_ms: float, total_ms: float) -> float:
    """Percent of the timeline played, clamped to [0, 100]."""
    if total_ms <= 0:
        return 100.0
    return max(0.0, min(100.0, elapsed_ms / total_ms * 100))


class TimelinePlayer:
    """Plays a timeline into a live surface, optionally exporting it."""

    def __init__(
        self,
        compositor: Optional[FrameCompositor] = None,
        encoder: Optional[VideoEncoder] = None,
        fps: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.compositor = compositor or FrameCompositor()
        self.encoder = encoder or VideoEncoder()
        self.fps = fps or settings.video_fps
        self.surface: Image.Image = self.compositor.new_surface()
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._active: Optional[PlaybackRun] = None
        self._state = PlayerState.IDLE
        self._progress = 0.0
        self._listeners: list[RunListener] = []
        self.last_result: Optional[RunResult] = None
        self.artifact: Optional[Artifact] = None

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> PlayerState:
        return self._state

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def active_run(self) -> Optional[PlaybackRun]:
        return self._active

    def add_listener(self, listener: RunListener) -> None:
        """Register a callback for lifecycle notifications."""
        self._listeners.append(listener)

    def remove_listener(self, listener: RunListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def release_artifact(self) -> Optional[Artifact]:
        """Forget the last exported video and hand it back to the caller."""
        artifact, self.artifact = self.artifact, None
        return artifact

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def start(
        self,
        timeline: Union[Timeline, Iterable[Scene]],
        mode: RunMode = RunMode.PREVIEW,
        frame_rate: Optional[int] = None,
    ) -> PlaybackRun:
        """Acquire the surface and play ``timeline`` in a background task.

        Returns:
            The new run, or the already active run of the same mode (no-op)

        Raises:
            PlaybackConflictError: A preview was requested during an export
        """
        snapshot = Timeline.snapshot(timeline)
        run, is_new = await self._acquire(snapshot, mode, frame_rate or self.fps)
        if not is_new:
            return run
        run.task = asyncio.create_task(self._drive(run))
        return run

    def stop(self) -> bool:
        """Request cancellation of the active preview.

        Takes effect before the next frame. Exports are not cancellable.

        Returns:
            True if a preview was asked to stop
        """
        run = self._active
        if run is None:
            return False
        if run.mode != RunMode.PREVIEW:
            logger.info(f"[PLAYER] Ignoring stop for export run {run.id}")
            return False
        run.cancel_requested = True
        return True

    async def wait(self) -> Optional[RunResult]:
        """Wait for the active run (if any) to reach a terminal state."""
        run = self._active
        if run is None:
            return self.last_result
        await run.done.wait()
        return self.last_result

    async def run(
        self,
        timeline: Union[Timeline, Iterable[Scene]],
        mode: RunMode = RunMode.PREVIEW,
        frame_rate: Optional[int] = None,
    ) -> Optional[RunResult]:
        """Play ``timeline`` to a terminal state.

        Args:
            timeline: Scenes to play (snapshotted at start)
            mode: Preview or export
            frame_rate: Frames per second (defaults to the player's fps)

        Returns:
            RunResult, or None if a run of the same mode was already active

        Raises:
            PlaybackConflictError: A preview was requested during an export
        """
        snapshot = Timeline.snapshot(timeline)
        run, is_new = await self._acquire(snapshot, mode, frame_rate or self.fps)
        if not is_new:
            return None
        run.task = asyncio.current_task()
        return await self._drive(run)

    async def _drive(self, run: PlaybackRun) -> RunResult:
        try:
            return await self._execute(run)
        finally:
            self._release(run)

    # ------------------------------------------------------------------
    # Run slot
    # ------------------------------------------------------------------

    async def _acquire(
        self, timeline: Timeline, mode: RunMode, fps: int
    ) -> tuple[PlaybackRun, bool]:
        """Claim the run slot.

        Returns:
            (run, is_new): the new run, or the active run of the same mode
        """
        async with self._lock:
            active = self._active
            if active is not None:
                if active.mode == mode:
                    logger.info(f"[PLAYER] {mode.value} already running ({active.id}), ignoring")
                    return active, False
                if active.mode == RunMode.EXPORT:
                    raise PlaybackConflictError()
                logger.info(f"[PLAYER] Stopping preview {active.id} before export")
                active.cancel_requested = True
                await active.done.wait()

            run = PlaybackRun(mode=mode, timeline=timeline, frame_rate=fps)
            self._active = run
            self._state = PlayerState.RUNNING
            self._progress = 0.0
            if mode == RunMode.EXPORT:
                self.artifact = None
            self.compositor.reset()

        logger.info(
            f"[PLAYER] Run {run.id} started: mode={mode.value}, scenes={len(timeline)}, "
            f"frames={run.total_frames}, fps={fps}"
        )
        await self._notify(RunEvent(RunEventType.STARTED, run.id, mode))
        return run, True

    def _release(self, run: PlaybackRun) -> None:
        if self._active is run:
            self._active = None
        run.done.set()

    # ------------------------------------------------------------------
    # Frame loop
    # ------------------------------------------------------------------

    async def _execute(self, run: PlaybackRun) -> RunResult:
        session: Optional[EncoderSession] = None
        try:
            if run.mode == RunMode.EXPORT:
                session = await self.encoder.start_session(self.surface, run.frame_rate)
                run.session = session

            total_ms = run.timeline.total_duration_ms
            interval_s = 1 / run.frame_rate
            deadline = self._clock()

            for scene in run.timeline.scenes:
                for _ in range(frame_count(scene.duration, run.frame_rate)):
                    if run.cancel_requested:
                        return await self._finish_cancelled(run)

                    await self.compositor.composite(self.surface, scene)
                    if session is not None:
                        await session.capture()
                    run.frames_rendered += 1

                    # Deadline pacing keeps drawing jitter from accumulating
                    deadline += interval_s
                    await self._sleep(max(0.0, deadline - self._clock()))

                    run.elapsed_ms += interval_s * 1000
                    await self._set_progress(run, compute_progress(run.elapsed_ms, total_ms))

            artifact = await session.finalize() if session is not None else None
            run.session = None
            return await self._finish_completed(run, artifact)

        except asyncio.CancelledError:
            if session is not None:
                await session.abort()
                run.session = None
            self._state = PlayerState.IDLE
            self._progress = 0.0
            raise
        except StoryforgeError as e:
            logger.error(f"[PLAYER] Run {run.id} failed: {e.message}")
            return await self._finish_failed(run, session, e.message, e.code)
        except Exception as e:
            logger.exception(f"[PLAYER] Run {run.id} failed unexpectedly: {e}")
            return await self._finish_failed(
                run, session, str(e) or e.__class__.__name__, StoryforgeError.code
            )

    async def _set_progress(self, run: PlaybackRun, percent: float) -> None:
        # Never report a smaller value within a run
        percent = max(run.progress, percent)
        run.progress = percent
        self._progress = percent
        await self._notify(
            RunEvent(
                RunEventType.PROGRESS,
                run.id,
                run.mode,
                percent=percent,
                frames_rendered=run.frames_rendered,
            )
        )

    async def _finish_completed(self, run: PlaybackRun, artifact: Optional[Artifact]) -> RunResult:
        run.progress = 100.0
        self._progress = 100.0
        self._state = PlayerState.IDLE
        if artifact is not None:
            self.artifact = artifact
        result = RunResult(
            run_id=run.id,
            mode=run.mode,
            outcome=RunOutcome.COMPLETED,
            progress=100.0,
            frames_rendered=run.frames_rendered,
            artifact=artifact,
        )
        self.last_result = result
        logger.info(f"[PLAYER] Run {run.id} completed: {run.frames_rendered} frames")
        await self._notify(
            RunEvent(
                RunEventType.COMPLETED,
                run.id,
                run.mode,
                percent=100.0,
                frames_rendered=run.frames_rendered,
                artifact=artifact,
            )
        )
        return result

    async def _finish_cancelled(self, run: PlaybackRun) -> RunResult:
        run.progress = 0.0
        self._progress = 0.0
        self._state = PlayerState.IDLE
        result = RunResult(
            run_id=run.id,
            mode=run.mode,
            outcome=RunOutcome.CANCELLED,
            progress=0.0,
            frames_rendered=run.frames_rendered,
        )
        self.last_result = result
        logger.info(f"[PLAYER] Run {run.id} cancelled after {run.frames_rendered} frames")
        await self._notify(
            RunEvent(RunEventType.CANCELLED, run.id, run.mode, frames_rendered=run.frames_rendered)
        )
        return result

    async def _finish_failed(
        self,
        run: PlaybackRun,
        session: Optional[EncoderSession],
        message: str,
        code: str,
    ) -> RunResult:
        if session is not None:
            await session.abort()
        run.session = None
        self._state = PlayerState.FAILED
        result = RunResult(
            run_id=run.id,
            mode=run.mode,
            outcome=RunOutcome.FAILED,
            progress=run.progress,
            frames_rendered=run.frames_rendered,
            error_message=message,
            error_code=code,
        )
        self.last_result = result
        await self._notify(
            RunEvent(
                RunEventType.FAILED,
                run.id,
                run.mode,
                percent=run.progress,
                frames_rendered=run.frames_rendered,
                error_message=message,
                error_code=code,
            )
        )
        return result

    async def _notify(self, event: RunEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"[PLAYER] Listener failed on {event.type.value}: {e}")
