"""
Vigil Liveness Engine: Frame Sampler
====================================
Fixed-rate asyncio task that pulls frames from a MediaSource, runs the
FaceAnalyzer on them, and hands the result to a consumer (normally
LivenessSession.process_frame).

Guarantees:
  - At most one analyzer call in flight; a tick that finds the previous
    call still running is dropped, not queued.
  - Ticks are skipped while the source is paused or has ended.
  - Analyzer exceptions and low-confidence detections both become
    "no face" for that tick.
  - After cancel() no further analyzer call starts and no pending
    result reaches the consumer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

import numpy as np

from vigil_analyzer import FaceAnalyzer
from vigil_camera import MediaSource, frame_illumination
from vigil_types import AnalyzerError, FrameObservation


_log = logging.getLogger("VigilSampler")

ObservationConsumer = Callable[[Optional[FrameObservation], Optional[np.ndarray]], None]


class FrameSampler:
    """Periodic frame sampling with cancellation."""

    def __init__(
        self,
        source: MediaSource,
        analyzer: FaceAnalyzer,
        consumer: ObservationConsumer,
        interval_ms: float = 100,
        min_detection_score: float = 0.6,
        on_tick: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.source = source
        self.analyzer = analyzer
        self.consumer = consumer
        self.interval_s = interval_ms / 1000.0
        self.min_detection_score = min_detection_score
        self.on_tick = on_tick
        self.on_error = on_error

        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._stopping = False
        self.error: Optional[BaseException] = None

        self.ticks = 0
        self.skipped_ticks = 0
        self.dropped_ticks = 0
        self.frames_analyzed = 0
        self.analyzer_errors = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def busy(self) -> bool:
        """True while an analyzer call is in flight."""
        return self._inflight is not None and not self._inflight.done()

    def start(self) -> None:
        """Schedule the sampling loop on the running event loop."""
        if self.running:
            return
        self._stopping = False
        self._loop_task = asyncio.get_running_loop().create_task(self._run())
        _log.info("Sampler started (interval=%.0f ms)", self.interval_s * 1000)

    def cancel(self) -> None:
        """Stop sampling immediately. Safe to call from a consumer callback."""
        self._stopping = True
        for task in (self._loop_task, self._inflight):
            if task is not None and not task.done():
                task.cancel()

    async def stop(self) -> None:
        """Cancel and wait for the sampling tasks to unwind."""
        self.cancel()
        current = asyncio.current_task()
        for task in (self._loop_task, self._inflight):
            if task is None or task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._inflight = None
        _log.info(
            "Sampler stopped: ticks=%d analyzed=%d dropped=%d skipped=%d errors=%d",
            self.ticks, self.frames_analyzed, self.dropped_ticks,
            self.skipped_ticks, self.analyzer_errors,
        )

    def get_stats(self) -> dict:
        return {
            "ticks": self.ticks,
            "frames_analyzed": self.frames_analyzed,
            "dropped_ticks": self.dropped_ticks,
            "skipped_ticks": self.skipped_ticks,
            "analyzer_errors": self.analyzer_errors,
        }

    # ── Loop ──────────────────────────────────────────────────

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        while not self._stopping:
            next_at += self.interval_s
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            if self._stopping:
                break
            self._tick()

    def _tick(self) -> None:
        self.ticks += 1
        if self.on_tick is not None:
            self.on_tick()
            if self._stopping:
                return

        if self.source.paused or self.source.ended:
            self.skipped_ticks += 1
            return

        if self.busy:
            self.dropped_ticks += 1
            _log.debug("Tick dropped: analyzer still busy")
            return

        frame = self.source.get_frame()
        if frame is None:
            self.skipped_ticks += 1
            return

        self._inflight = asyncio.get_running_loop().create_task(self._analyze(frame))

    async def _analyze(self, frame: np.ndarray) -> None:
        self.frames_analyzed += 1
        try:
            observation = await self.analyzer.detect(frame)
        except asyncio.CancelledError:
            raise
        except AnalyzerError as e:
            self.analyzer_errors += 1
            _log.warning("Analyzer error: %s; treating as no face", e)
            observation = None
        except Exception:
            self.analyzer_errors += 1
            _log.warning("Analyzer failed on frame; treating as no face", exc_info=True)
            observation = None

        if observation is not None and observation.detection_score < self.min_detection_score:
            observation = None

        if observation is not None and observation.illumination is None:
            level = frame_illumination(frame)
            if level is not None:
                observation = observation.with_illumination(level)

        if self._stopping:
            return

        try:
            self.consumer(observation, frame)
        except Exception as e:
            _log.error("Frame consumer raised; stopping sampler", exc_info=True)
            self.error = e
            self.cancel()
            if self.on_error is not None:
                self.on_error(e)
