"""
Hierarchical summarization — folds many frame descriptions into one narrative.

  0 descriptions            → failure, nothing to summarize
  up to batch_size (30)     → one direct summary request
  more than batch_size      → summarize each batch of 30 in order, then one
                              merge request over the batch summaries

A failed batch is skipped. A failed merge is a failure: stitching raw batch
summaries together is not a useful summary.
"""

import asyncio
import logging
from dataclasses import dataclass

from config import BATCH_SUMMARY_MAX_TOKENS, MERGE_MAX_TOKENS, SUMMARY_MAX_TOKENS, SummaryConfig
from providers import AnalysisError, Provider, TransportError

log = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a screen-recording analyst. You turn chronological descriptions of "
    "screenshots into accurate, concise summaries of what happened on screen."
)

DIRECT_PROMPT = """\
Below are descriptions of screenshots taken from one screen recording, in \
chronological order (earlier entries happened first).

{descriptions}

Write a summary of 100-300 words of what happened during the recording. Keep \
events in the order they occurred. Cover the main activity, the sequence of key \
actions, and any important information visible on screen. Do not invent details \
that are not in the descriptions."""

BATCH_PROMPT = """\
This is part {index} of {total} of one screen recording. Below are descriptions \
of screenshots from this part, in chronological order.

{descriptions}

Summarize what happened in part {index} of {total} in 80-150 words, keeping the \
chronological order. Describe only this part; do not guess what happened before \
or after it."""

MERGE_PROMPT = """\
Below are summaries of {count} consecutive parts of one screen recording, in \
chronological order.

{summaries}

Merge them into one coherent summary of the whole recording, 300-500 words. Keep \
events in chronological order across part boundaries and make the transitions \
read smoothly. Do not repeat the same event twice and do not invent details."""


@dataclass(frozen=True)
class SummaryOutcome:
    success: bool
    text: str
    message: str

    @classmethod
    def ok(cls, text: str, message: str) -> "SummaryOutcome":
        return cls(True, text, message)

    @classmethod
    def failure(cls, message: str) -> "SummaryOutcome":
        return cls(False, "", message)


def partition(items: list, size: int) -> list[list]:
    """Split `items` into consecutive chunks of at most `size`, order preserved."""
    if size < 1:
        raise ValueError("size must be at least 1")
    return [items[i : i + size] for i in range(0, len(items), size)]


def _numbered(lines: list[str]) -> str:
    return "\n".join(f"{i}. {line}" for i, line in enumerate(lines, 1))


class HierarchicalSummarizer:
    """
    Turns an ordered list of frame descriptions into a SummaryOutcome.
    `on_progress(status, percent)` reports progress within the summary phase (0-100).
    """

    def __init__(self, provider: Provider, config: SummaryConfig, on_progress=None):
        self.provider = provider
        self.config = config
        self._on_progress = on_progress

    def _progress(self, status: str, percent: int) -> None:
        log.info("%s", status)
        if self._on_progress:
            self._on_progress(status, percent)

    async def summarize(self, descriptions: list[str]) -> SummaryOutcome:
        items = [d.strip() for d in descriptions if d and d.strip()]
        if not items:
            return SummaryOutcome.failure("No usable frame descriptions to summarize")

        if len(items) <= self.config.batch_size:
            return await self._direct(items)
        return await self._batched(items)

    async def _direct(self, items: list[str]) -> SummaryOutcome:
        self._progress(f"Summarizing {len(items)} frame descriptions...", 0)
        prompt = DIRECT_PROMPT.format(descriptions=_numbered(items))
        try:
            text = await self._request(prompt, SUMMARY_MAX_TOKENS)
        except AnalysisError as e:
            log.warning("Direct summary failed: %s", e)
            return SummaryOutcome.failure(f"Summary generation failed: {e}")

        self._progress("Summary complete", 100)
        return SummaryOutcome.ok(text, f"Summarized {len(items)} frame descriptions")

    async def _batched(self, items: list[str]) -> SummaryOutcome:
        batches = partition(items, self.config.batch_size)
        total = len(batches)
        log.info("%d descriptions → %d batches of up to %d", len(items), total, self.config.batch_size)

        summaries = []
        for index, batch in enumerate(batches, 1):
            self._progress(f"Summarizing batch {index}/{total}...", (index - 1) * 90 // total)
            prompt = BATCH_PROMPT.format(index=index, total=total, descriptions=_numbered(batch))
            try:
                summaries.append(await self._request(prompt, BATCH_SUMMARY_MAX_TOKENS))
            except AnalysisError as e:
                log.warning("Batch %d/%d failed, skipping: %s", index, total, e)
                self._progress(f"Batch {index}/{total} failed, continuing", index * 90 // total)

        if not summaries:
            return SummaryOutcome.failure(f"All {total} batch summaries failed")

        self._progress(f"Merging {len(summaries)} batch summaries...", 90)
        merge_input = "\n\n".join(f"Part {i}:\n{s}" for i, s in enumerate(summaries, 1))
        prompt = MERGE_PROMPT.format(count=len(summaries), summaries=merge_input)
        try:
            text = await self._request(prompt, MERGE_MAX_TOKENS)
        except AnalysisError as e:
            log.warning("Merge failed: %s", e)
            return SummaryOutcome.failure(f"Merge failed: {e}")

        self._progress("Summary complete", 100)
        skipped = total - len(summaries)
        message = f"Summarized {len(items)} frame descriptions in {total} batches"
        if skipped:
            message += f" ({skipped} skipped)"
        return SummaryOutcome.ok(text, message)

    async def _request(self, prompt: str, max_tokens: int) -> str:
        timeout = self.config.request_timeout
        try:
            return await asyncio.wait_for(
                self.provider.complete(prompt, SYSTEM_PROMPT, max_tokens, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(f"Request timed out after {timeout:.0f}s") from None
