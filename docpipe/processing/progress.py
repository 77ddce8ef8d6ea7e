"""
Progress reporting and cooperative cancellation.

A ProgressSink is handed down the call chain (orchestrator → extractor →
embedding generator) instead of threading ad-hoc callbacks through every
layer. Each layer reports on its own 0.0–1.0 scale; the caller narrows the
sink to the band it owns with `scaled(start, end)`:

    orchestrator sink           0.0 ─────────────────────────── 1.0
      extraction band           0.0 ── 0.3
      embedding band                   0.3 ─────────── 0.9
      finalize                                         0.9 ── 1.0

CancellationToken is checked between pages / batches, never mid-call.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from docpipe.core.errors import ProcessingCancelled

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Progress sinks
# ---------------------------------------------------------------------------

class ProgressSink:
    """Base sink: accepts progress in [0, 1] and discards it."""

    async def report(self, progress: float, stage: str = "") -> None:
        return None

    def scaled(self, start: float, end: float) -> "ProgressSink":
        """Return a sink mapping 0..1 onto [start, end] of this sink."""
        return ScaledProgressSink(self, start, end)


class ScaledProgressSink(ProgressSink):

    def __init__(self, parent: ProgressSink, start: float, end: float) -> None:
        self._parent = parent
        self._start  = start
        self._end    = end

    async def report(self, progress: float, stage: str = "") -> None:
        clamped = min(max(progress, 0.0), 1.0)
        await self._parent.report(self._start + (self._end - self._start) * clamped, stage)


class CallbackProgressSink(ProgressSink):
    """Adapts an async callable `(progress, stage) -> None` into a sink."""

    def __init__(self, callback: Callable[[float, str], Awaitable[None]]) -> None:
        self._callback = callback

    async def report(self, progress: float, stage: str = "") -> None:
        await self._callback(progress, stage)


class MonotonicProgressSink(ProgressSink):
    """Drops any report that would move progress backwards."""

    def __init__(self, parent: ProgressSink) -> None:
        self._parent = parent
        self._last   = -1.0

    async def report(self, progress: float, stage: str = "") -> None:
        if progress < self._last:
            logger.debug("Progress regression dropped | last=%.3f got=%.3f", self._last, progress)
            return
        self._last = progress
        await self._parent.report(progress, stage)


NULL_PROGRESS = ProgressSink()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancellationToken:
    """Cooperative cancellation flag shared between a run and its canceller."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ProcessingCancelled()

    async def wait(self) -> None:
        await self._event.wait()
