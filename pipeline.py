"""
Pipeline coordinator — wires sampler → worker → summarizer for one session.

Live recording:
    pipeline = SummaryPipeline(config, on_completed=...)
    await pipeline.start()
    ...
    outcome = await pipeline.stop()      # or: await pipeline.cancel()

Recorded video:
    outcome = await SummaryPipeline(config).summarize_video(path)

Events:
  on_frame_analyzed(result)        — one per frame, success or failure
  on_progress(status, percent)     — percent is None while it cannot be known
  on_completed(outcome)            — exactly once per session
"""

import asyncio
import logging
import shutil
import tempfile
import time
from pathlib import Path

from config import SummaryConfig
from frame_extractor import CaptureError
from providers import Provider, get_provider
from sampler import FrameSampler, SamplingSession, sample_recording
from summarizer import HierarchicalSummarizer, SummaryOutcome
from worker import AnalysisResult, AnalysisWorker, FrameTask

log = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Analysis cancelled by user"

# Post-hoc progress milestones (percent).
PROGRESS_EXTRACT = 10
PROGRESS_ANALYZE_START = 20
PROGRESS_ANALYZE_SPAN = 60
PROGRESS_SUMMARY_START = 85
PROGRESS_SUMMARY_END = 99


class SummaryPipeline:
    def __init__(
        self,
        config: SummaryConfig,
        provider: Provider | None = None,
        capture=None,
        frames_dir: Path | None = None,
        on_frame_analyzed=None,
        on_progress=None,
        on_completed=None,
        region=None,
        display=None,
        clock=time.monotonic,
    ):
        self.config = config
        self._provider = provider
        self._owns_provider = provider is None
        self._capture = capture
        self._frames_dir = Path(frames_dir) if frames_dir else None
        self._owns_frames_dir = frames_dir is None
        self._on_frame_analyzed = on_frame_analyzed
        self._on_progress = on_progress
        self._on_completed = on_completed
        self._region = region
        self._display = display
        self._clock = clock

        self.sampler: FrameSampler | None = None
        self.worker: AnalysisWorker | None = None
        self.session: SamplingSession | None = None
        self._phase: asyncio.Task | None = None
        self._done: asyncio.Future | None = None
        self._outcome: SummaryOutcome | None = None
        self._cancelled = False
        self._analyzed = 0
        self._total = 0

    # -- public API ----------------------------------------------------------

    @property
    def outcome(self) -> SummaryOutcome | None:
        return self._outcome

    @property
    def running(self) -> bool:
        return self._done is not None and self._outcome is None

    def results(self) -> list[AnalysisResult]:
        return self.worker.results() if self.worker else []

    async def start(self, session_start: float | None = None) -> SamplingSession:
        """
        Start a live session: the worker first, then the sampler, so the
        first frame (grabbed immediately) already has a consumer.
        Raises ConfigError before anything is captured or sent.
        """
        self._begin()
        self.worker = AnalysisWorker(self._provider, self.config, on_result=self._frame_analyzed)
        self.worker.start()
        self.sampler = FrameSampler(
            self._frames_dir,
            capture=self._capture,
            on_frame_captured=self._frame_captured,
            on_capture_error=self._capture_failed,
            clock=self._clock,
            region=self._region,
            display=self._display,
        )
        self.session = self.sampler.start(session_start)
        self._progress("Recording, analyzing frames as they are captured...", None)
        return self.session

    async def stop(self) -> SummaryOutcome:
        """Stop sampling, finish every queued frame, then summarize."""
        if self.sampler is None:
            raise RuntimeError("Live session not started")
        if self._outcome is not None:
            return self._outcome
        return await self._run_phase(self._finish_live())

    async def summarize_video(self, video_path: Path) -> SummaryOutcome:
        """Summarize an already-recorded video. Raises ConfigError before any work."""
        self._begin()
        return await self._run_phase(self._run_post_hoc(Path(video_path)))

    async def cancel(self) -> SummaryOutcome:
        """
        Abort the session: no further requests are issued, queued and
        in-flight images are deleted, and the outcome is a failure.
        """
        if self._outcome is not None:
            return self._outcome
        self._cancelled = True
        log.info("Cancelling session")

        if self.sampler is not None:
            await self.sampler.cancel()
        if self.worker is not None:
            await self.worker.cancel()
        if self._phase is not None and not self._phase.done() and self._phase is not asyncio.current_task():
            self._phase.cancel()
            await asyncio.gather(self._phase, return_exceptions=True)

        self._complete(SummaryOutcome.failure(CANCELLED_MESSAGE))
        await self._shutdown()
        return self._outcome

    # -- phases --------------------------------------------------------------

    def _begin(self) -> None:
        if self._done is not None:
            raise RuntimeError("Pipeline already used; create a new one per session")
        if self._provider is None:
            self._provider = get_provider(self.config)
        else:
            self.config.validate()
        if self._frames_dir is None:
            self._frames_dir = Path(tempfile.mkdtemp(prefix="screen-recap-"))
        self._done = asyncio.get_running_loop().create_future()

    async def _run_phase(self, coro) -> SummaryOutcome:
        self._phase = asyncio.create_task(coro)
        try:
            await self._phase
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
        except Exception as e:
            log.exception("Session aborted by an unexpected error")
            self._complete(SummaryOutcome.failure(f"Unexpected error: {e}"))
            await self._shutdown()
            raise
        return await asyncio.shield(self._done)

    async def _finish_live(self) -> None:
        await self.sampler.stop()
        pending = self.worker.pending + (1 if self.worker.in_flight else 0)
        self._progress(f"Recording stopped, finishing {pending} queued frames...", None)
        results = await self.worker.drain_and_stop()
        await self._finish(results)

    async def _run_post_hoc(self, video_path: Path) -> None:
        if not video_path.is_file():
            await self._finish_with(SummaryOutcome.failure(f"Video not found: {video_path}"))
            return

        self._progress("Extracting frames...", PROGRESS_EXTRACT)
        try:
            self.session, frames = await sample_recording(video_path, self._frames_dir)
        except CaptureError as e:
            await self._finish_with(SummaryOutcome.failure(f"Frame extraction failed: {e}"))
            return
        if not frames:
            await self._finish_with(SummaryOutcome.failure("No frames could be extracted from the video"))
            return

        self._total = len(frames)
        self._progress(f"Analyzing {self._total} frames...", PROGRESS_ANALYZE_START)
        self.worker = AnalysisWorker(self._provider, self.config, on_result=self._frame_analyzed)
        self.worker.start()
        for frame in frames:
            self.worker.enqueue(FrameTask(image=Path(frame["path"]), timestamp=frame["timestamp"]))
        results = await self.worker.drain_and_stop()
        await self._finish(results)

    async def _finish(self, results: list[AnalysisResult]) -> None:
        usable = [r for r in results if r.success and r.description.strip()]
        log.info("%d of %d frames analyzed successfully", len(usable), len(results))

        if not usable:
            message = f"No usable frame descriptions ({len(results)} frames, none analyzed successfully)"
            errors = [r.error for r in results if r.error]
            if errors:
                message += f"; last error: {errors[-1]}"
            await self._finish_with(SummaryOutcome.failure(message))
            return

        summarizer = HierarchicalSummarizer(self._provider, self.config, on_progress=self._summary_progress)
        descriptions = [f"[{r.timestamp:.1f}s] {r.description}" for r in usable]
        await self._finish_with(await summarizer.summarize(descriptions))

    async def _finish_with(self, outcome: SummaryOutcome) -> None:
        if outcome.success:
            self._progress("Done", 100)
        self._complete(outcome)
        await self._shutdown()

    # -- event plumbing ------------------------------------------------------

    def _frame_captured(self, path: Path, timestamp: float) -> None:
        self.worker.enqueue(FrameTask(image=path, timestamp=timestamp))

    def _capture_failed(self, reason: str) -> None:
        self._progress(f"Frame capture failed: {reason}", None)

    def _frame_analyzed(self, result: AnalysisResult) -> None:
        self._analyzed += 1
        if self._on_frame_analyzed:
            self._on_frame_analyzed(result)
        if self._total:
            percent = PROGRESS_ANALYZE_START + PROGRESS_ANALYZE_SPAN * self._analyzed // self._total
            self._progress(f"Analyzed {self._analyzed}/{self._total} frames", percent)

    def _summary_progress(self, status: str, percent: int) -> None:
        span = PROGRESS_SUMMARY_END - PROGRESS_SUMMARY_START
        self._progress(status, PROGRESS_SUMMARY_START + span * min(percent, 100) // 100)

    def _progress(self, status: str, percent: int | None) -> None:
        if self._on_progress:
            self._on_progress(status, percent)

    def _complete(self, outcome: SummaryOutcome) -> None:
        if self._outcome is not None:
            return
        self._outcome = outcome
        if outcome.success:
            log.info("Session complete: %s", outcome.message)
        else:
            log.warning("Session failed: %s", outcome.message)
        if self._on_completed:
            self._on_completed(outcome)
        if not self._done.done():
            self._done.set_result(outcome)

    async def _shutdown(self) -> None:
        if self._owns_provider and self._provider is not None:
            await self._provider.aclose()
        if self._owns_frames_dir and self._frames_dir is not None:
            shutil.rmtree(self._frames_dir, ignore_errors=True)
