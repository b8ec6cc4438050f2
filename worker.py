"""
Analysis worker — describes captured frames one at a time.

Frames go into a FIFO queue as they are captured. A single consumer task
pulls them out in order and sends each to the vision model, so at most one
request is ever in flight. Every task ends up in the result list, failed or
not, and its image is deleted as soon as the request is over.
"""

import asyncio
import enum
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from config import SummaryConfig
from frame_extractor import encode_image
from providers import AnalysisError, Provider, TransportError

log = logging.getLogger(__name__)


@dataclass
class FrameTask:
    image: Path | bytes
    timestamp: float
    description: str = ""
    success: bool = False
    error: str = ""

    @property
    def label(self) -> str:
        return self.image.name if isinstance(self.image, Path) else f"<{len(self.image)} bytes>"

    def release(self) -> None:
        """Delete the image file behind this task, if any."""
        if isinstance(self.image, Path):
            try:
                self.image.unlink(missing_ok=True)
            except OSError as e:
                log.warning("Could not delete %s: %s", self.image, e)


@dataclass(frozen=True)
class AnalysisResult:
    frame: str
    timestamp: float
    description: str
    success: bool
    error: str = ""

    @classmethod
    def from_task(cls, task: FrameTask) -> "AnalysisResult":
        return cls(
            frame=str(task.image) if isinstance(task.image, Path) else task.label,
            timestamp=task.timestamp,
            description=task.description,
            success=task.success,
            error=task.error,
        )


class WorkerState(str, enum.Enum):
    IDLE = "idle"
    BUSY = "busy"
    STOPPED = "stopped"
    CANCELLED = "cancelled"


class AnalysisWorker:
    """
    Single-flight frame analysis queue.

      start()            — spawn the consumer task on the running loop
      enqueue(task)      — add a frame (FIFO)
      drain_and_stop()   — finish everything queued, then stop
      cancel()           — drop the queue, abort the request in flight

    `on_result(result)` fires for every finished task, success or failure.
    `results()` is safe to call from other threads.
    """

    def __init__(self, provider: Provider, config: SummaryConfig, on_result=None, clock=time.monotonic):
        self.provider = provider
        self.config = config
        self._on_result = on_result
        self._clock = clock

        self._queue: asyncio.Queue[FrameTask] = asyncio.Queue()
        self._results: list[AnalysisResult] = []
        self._results_lock = threading.Lock()
        self._state = WorkerState.IDLE
        self._runner: asyncio.Task | None = None
        self._current: FrameTask | None = None
        self._stopping = False
        self._last_finished: float | None = None

    # -- public API ----------------------------------------------------------

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def in_flight(self) -> FrameTask | None:
        return self._current

    def results(self) -> list[AnalysisResult]:
        with self._results_lock:
            return list(self._results)

    def start(self) -> None:
        if self._runner is not None:
            raise RuntimeError("Worker already started")
        if self._state is WorkerState.CANCELLED:
            raise RuntimeError("Worker was cancelled")
        self._runner = asyncio.create_task(self._run(), name="analysis-worker")

    def enqueue(self, task: FrameTask) -> bool:
        """Queue a frame. Returns False (and deletes the image) once the worker is shutting down."""
        if self._stopping or self._state in (WorkerState.STOPPED, WorkerState.CANCELLED):
            log.debug("Worker not accepting frames, dropping %s", task.label)
            task.release()
            return False
        self._queue.put_nowait(task)
        log.debug("Queued %s (t=%.1fs, queue=%d)", task.label, task.timestamp, self._queue.qsize())
        return True

    async def drain_and_stop(self) -> list[AnalysisResult]:
        """Process every queued frame, then stop. Returns the ordered results."""
        if self._state is WorkerState.CANCELLED:
            return self.results()
        self._stopping = True
        if self._runner is None:
            self.start()
        await self._runner
        self._state = WorkerState.STOPPED
        return self.results()

    async def cancel(self) -> None:
        """Abort immediately: the in-flight request is cancelled and every queued image deleted."""
        if self._state is WorkerState.CANCELLED:
            return
        self._state = WorkerState.CANCELLED
        self._stopping = True

        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass

        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait().release()
            dropped += 1
        if dropped:
            log.info("Cancelled with %d frames still queued", dropped)

    # -- consumer loop -------------------------------------------------------

    async def _run(self) -> None:
        while True:
            if self._stopping and self._queue.empty():
                return
            try:
                task = await asyncio.wait_for(self._queue.get(), timeout=self.config.queue_poll_interval)
            except asyncio.TimeoutError:
                continue

            self._current = task
            try:
                await self._pace()
                self._state = WorkerState.BUSY
                await self._process(task)
            finally:
                self._current = None
                task.release()
                self._last_finished = self._clock()
                if self._state is WorkerState.BUSY:
                    self._state = WorkerState.IDLE

    async def _pace(self) -> None:
        """Keep INTER_REQUEST_DELAY between the end of one request and the start of the next."""
        if self._last_finished is None:
            return
        wait = self.config.inter_request_delay - (self._clock() - self._last_finished)
        if wait > 0:
            await asyncio.sleep(wait)

    async def _process(self, task: FrameTask) -> None:
        log.info("Analyzing %s (t=%.1fs)", task.label, task.timestamp)
        try:
            task.description = await self._analyze(task)
            task.success = True
        except AnalysisError as e:
            task.error = str(e)
        except OSError as e:
            task.error = f"Cannot read image: {e}"

        if task.success:
            preview = task.description[:50] + ("..." if len(task.description) > 50 else "")
            log.info("Frame %s → %s", task.label, preview)
        else:
            log.warning("Frame %s failed: %s", task.label, task.error)

        result = AnalysisResult.from_task(task)
        with self._results_lock:
            self._results.append(result)
        if self._on_result:
            self._on_result(result)

    async def _analyze(self, task: FrameTask) -> str:
        if isinstance(task.image, Path) and not task.image.exists():
            raise FileNotFoundError(f"frame file missing: {task.image}")

        image_b64 = await asyncio.to_thread(encode_image, task.image, self.config.image_max_width)
        try:
            return await asyncio.wait_for(
                self.provider.describe_image(image_b64, self.config.frame_prompt, self.config.request_timeout),
                timeout=self.config.request_timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(f"Request timed out after {self.config.request_timeout:.0f}s") from None
