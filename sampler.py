"""
Frame sampling — decides when to grab a frame.

Live recordings: grab one frame immediately, then every SHORT_INTERVAL
seconds; once the recording has run for INTERVAL_SWITCH_THRESHOLD seconds,
back off to LONG_INTERVAL. The switch happens at most once per session.

Recorded videos: pick one fixed interval from the total duration and
extract every frame in a single ffmpeg pass.
"""

import asyncio
import enum
import functools
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from config import INTERVAL_SWITCH_THRESHOLD, LONG_INTERVAL, SHORT_INTERVAL
from frame_extractor import (
    CaptureError,
    capture_screen_frame,
    compute_sampling_interval,
    extract_frames_uniform,
    get_video_duration,
)

log = logging.getLogger(__name__)


class SamplingMode(str, enum.Enum):
    LIVE = "live"
    POST_HOC = "post_hoc"


def target_interval(elapsed: float) -> float:
    """Sampling interval for a live recording that has run for `elapsed` seconds."""
    return SHORT_INTERVAL if elapsed < INTERVAL_SWITCH_THRESHOLD else LONG_INTERVAL


@dataclass
class SamplingSession:
    start: float
    mode: SamplingMode = SamplingMode.LIVE
    interval: float = SHORT_INTERVAL

    def elapsed(self, now: float) -> float:
        return max(0.0, now - self.start)

    def update(self, now: float) -> bool:
        """
        Recompute the interval for the current elapsed time.
        The interval only ever grows. Returns True if it changed.
        """
        if self.mode is not SamplingMode.LIVE:
            return False
        target = target_interval(self.elapsed(now))
        if target > self.interval:
            self.interval = target
            return True
        return False

    @classmethod
    def for_recording(cls, duration: float) -> "SamplingSession":
        return cls(start=0.0, mode=SamplingMode.POST_HOC, interval=compute_sampling_interval(duration))


class FrameSampler:
    """
    Drives live capture on the running event loop.

    `capture` is an async callable taking the output path; it defaults to an
    ffmpeg screen grab. Callbacks:
      on_frame_captured(path, timestamp)   — timestamp is seconds since start
      on_capture_error(reason)
    """

    def __init__(
        self,
        frames_dir: Path,
        capture=None,
        on_frame_captured=None,
        on_capture_error=None,
        clock=time.monotonic,
        sleep=asyncio.sleep,
        region=None,
        display=None,
    ):
        self.frames_dir = Path(frames_dir)
        self._capture = capture or functools.partial(capture_screen_frame, region=region, display=display)
        self._on_frame_captured = on_frame_captured
        self._on_capture_error = on_capture_error
        self._clock = clock
        self._sleep = sleep

        self.session: SamplingSession | None = None
        self.frame_count = 0
        self._loop_task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._last_capture: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self, session_start: float | None = None) -> SamplingSession:
        """Begin sampling. `session_start` is a value of the sampler's clock (default: now)."""
        if self.running:
            raise RuntimeError("Sampler already running")
        self.frames_dir.mkdir(parents=True, exist_ok=True)
        now = self._clock()
        self.session = SamplingSession(start=now if session_start is None else session_start)
        self.frame_count = 0
        self._loop_task = asyncio.create_task(self._run(now), name="frame-sampler")
        log.info("Sampling started (every %.1fs, %.1fs after %.0fs)",
                 SHORT_INTERVAL, LONG_INTERVAL, INTERVAL_SWITCH_THRESHOLD)
        return self.session

    async def stop(self) -> None:
        """Stop ticking and wait for captures already in flight to land."""
        await self._cancel_loop()
        if self._pending:
            await asyncio.wait(set(self._pending))
        log.info("Sampling stopped after %d ticks", self.frame_count)

    async def cancel(self) -> None:
        """Stop ticking, abort in-flight captures and remove their partial files."""
        await self._cancel_loop()
        pending = set(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _cancel_loop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None

    async def _run(self, now: float) -> None:
        # The first tick reuses the reading taken in start().
        while True:
            if self.session.update(now):
                log.info("Switching to %.1fs interval (recording %.1fs)",
                         self.session.interval, self.session.elapsed(now))
            self._launch_capture(self.session.elapsed(now))
            await self._sleep(self.session.interval)
            now = self._clock()

    def _launch_capture(self, timestamp: float) -> None:
        self.frame_count += 1
        path = self.frames_dir / f"frame_{self.frame_count:04d}_{int(timestamp * 1000)}ms.jpg"
        task = asyncio.create_task(self._capture_one(path, timestamp, self._last_capture))
        self._last_capture = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _capture_one(self, path: Path, timestamp: float, previous: asyncio.Task | None) -> None:
        try:
            error = None
            try:
                await self._capture(path)
            except (CaptureError, OSError) as e:
                error = str(e) or type(e).__name__

            # Emit in tick order even if an earlier grab is slower than this one.
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
        except asyncio.CancelledError:
            path.unlink(missing_ok=True)
            raise

        if error is not None:
            log.warning("Frame capture failed at %.1fs: %s", timestamp, error)
            path.unlink(missing_ok=True)
            if self._on_capture_error:
                self._on_capture_error(error)
            return

        log.debug("Captured %s at %.1fs", path.name, timestamp)
        if self._on_frame_captured:
            self._on_frame_captured(path, timestamp)


async def sample_recording(video_path: Path, frames_dir: Path) -> tuple[SamplingSession, list[dict]]:
    """
    Post-hoc sampling of a finished recording: probe the duration, pick the
    interval, extract frames uniformly.
    Returns (session, [{'timestamp': float, 'path': str}, ...]).
    """
    duration = await asyncio.to_thread(get_video_duration, video_path)
    session = SamplingSession.for_recording(duration)
    if duration <= 0:
        log.warning("Could not determine duration of %s, using %.1fs interval", video_path.name, session.interval)
    else:
        log.info("%s: %.1fs long, sampling every %.1fs", video_path.name, duration, session.interval)
    frames = await extract_frames_uniform(video_path, frames_dir, session.interval)
    return session, frames
