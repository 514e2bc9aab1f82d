"""
Vigil Liveness Engine: Verifier
===============================
Top-level orchestrator. Wires one MediaSource, one FaceAnalyzer, one
FrameSampler and one LivenessSession together for each verification
attempt, and exposes the user-facing commands:

    start(challenge) -> switch_challenge() -> cancel()

The media source is a scoped resource: it is opened by start() and
released on every exit path (pass, fail, timeout, cancel, error).

Usage:
    async with LivenessVerifier(analyzer, config=load_config()) as verifier:
        verifier.on("progress_changed", print)
        session = await verifier.run(ChallengeType.BLINK)
        if session.state is SessionState.PASSED:
            await verifier.finalize(user_id="42", mode="register")
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional

import httpx

from vigil_analyzer import FaceAnalyzer, get_model_loader
from vigil_camera import CameraSource, MediaSource
from vigil_config import merge_config
from vigil_finalizer import BiometricResponse, CaptureFinalizer
from vigil_logger import VigilLogger, get_logger
from vigil_sampler import FrameSampler
from vigil_session import EVENTS as SESSION_EVENTS
from vigil_session import LivenessSession
from vigil_types import (
    CameraUnavailableError,
    ChallengeType,
    FinalizeError,
    ModelLoadError,
    SessionStateError,
)


_log = logging.getLogger("VigilEngine")

EVENTS = SESSION_EVENTS + ("model_progress",)

REASON_CAMERA = "camera_error"
REASON_MODEL = "model_error"
REASON_SOURCE_ENDED = "source_ended"


class LivenessVerifier:
    """Runs liveness sessions against a camera and a face analyzer."""

    def __init__(
        self,
        analyzer: FaceAnalyzer,
        config: Optional[dict] = None,
        source_factory: Optional[Callable[[], MediaSource]] = None,
        audit: Optional[VigilLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = merge_config(config)
        self.analyzer = analyzer
        self._source_factory = source_factory or self._open_camera
        self._clock = clock

        if audit is None:
            log_path = self.config["logging"]["audit_log_path"]
            audit = get_logger(os.path.dirname(log_path) or ".")
        self.audit = audit
        self.finalizer = CaptureFinalizer.from_config(self.config, transport=transport, audit=audit)

        self.session: Optional[LivenessSession] = None
        self.sampler: Optional[FrameSampler] = None
        self.source: Optional[MediaSource] = None
        self._done: Optional[asyncio.Future] = None
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)

    # ── Events ────────────────────────────────────────────────

    def on(self, event: str, callback: Callable) -> None:
        """Subscribe to session events (forwarded) or model_progress."""
        if event not in EVENTS:
            raise ValueError(f"Unknown event {event!r}; expected one of {EVENTS}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                _log.warning("Listener for %s raised", event, exc_info=True)

    # ── Commands ──────────────────────────────────────────────

    @property
    def active(self) -> bool:
        return self.session is not None and not self.session.state.is_terminal

    async def start(self, challenge: ChallengeType = ChallengeType.BLINK) -> LivenessSession:
        """Load models, open the source and begin sampling.

        Raises:
            SessionStateError: A session is already running.
            ModelLoadError: Analyzer models could not be loaded.
            CameraUnavailableError: The media source could not be opened.
        """
        if self.active:
            raise SessionStateError("A liveness session is already running")
        await self._teardown()

        loader = get_model_loader(self.analyzer)
        try:
            await loader.ensure_loaded(lambda pct: self._emit("model_progress", pct))
        except ModelLoadError:
            self._emit("failed", REASON_MODEL)
            raise

        try:
            self.source = self._source_factory()
        except CameraUnavailableError as e:
            _log.error("Camera unavailable: %s", e)
            self.audit.error("Camera unavailable", e)
            self._emit("failed", REASON_CAMERA)
            raise

        try:
            session = LivenessSession.from_config(
                self.config, ChallengeType(challenge), audit=self.audit, clock=self._clock,
            )
            for event in SESSION_EVENTS:
                session.on(event, self._forwarder(event))
            session.on("completed", self._on_terminal)
            session.on("failed", self._on_terminal)

            sampler_cfg = self.config["sampler"]
            self.sampler = FrameSampler(
                self.source,
                self.analyzer,
                consumer=session.process_frame,
                interval_ms=sampler_cfg["interval_ms"],
                min_detection_score=self.config["analyzer"]["min_detection_score"],
                on_tick=self._on_tick,
                on_error=self._on_sampler_error,
            )
            self.session = session
            self._done = asyncio.get_running_loop().create_future()
            self.sampler.start()
        except BaseException:
            self._release_source()
            raise

        _log.info("Liveness session started: challenge=%s", session.challenge_type.value)
        return session

    def switch_challenge(self) -> ChallengeType:
        if self.session is None:
            raise SessionStateError("No liveness session to switch")
        return self.session.switch_challenge()

    def cancel(self) -> None:
        if self.session is not None:
            self.session.cancel()

    async def wait(self) -> LivenessSession:
        """Block until the current session reaches a terminal state."""
        if self._done is None or self.session is None:
            raise SessionStateError("No liveness session has been started")
        try:
            await self._done
        finally:
            await self._teardown()
        return self.session

    async def run(self, challenge: ChallengeType = ChallengeType.BLINK) -> LivenessSession:
        """start() then wait(); the source is released however it ends."""
        await self.start(challenge)
        return await self.wait()

    async def finalize(self, user_id: str, mode: str = "register") -> BiometricResponse:
        """Send the passed result to the biometric API. Retry-safe."""
        if self.session is None or self.session.result is None:
            raise FinalizeError("No passed liveness result to finalize", recoverable=False)
        return await self.finalizer.finalize(self.session.result, user_id, mode=mode)

    async def close(self) -> None:
        if self.active:
            self.session.cancel()
        await self._teardown()

    async def __aenter__(self) -> "LivenessVerifier":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ── Internals ─────────────────────────────────────────────

    def _open_camera(self) -> MediaSource:
        cam = self.config["camera"]
        return CameraSource(cam["camera_id"], cam["width"], cam["height"], cam["fps"])

    def _forwarder(self, event: str) -> Callable:
        return lambda *args: self._emit(event, *args)

    def _on_tick(self) -> None:
        session = self.session
        if session is None or session.state.is_terminal:
            return
        if session.check_timeout():
            return
        if self.source is not None and self.source.ended and not (self.sampler and self.sampler.busy):
            session.fail(REASON_SOURCE_ENDED)

    def _on_terminal(self, *_args) -> None:
        if self.sampler is not None:
            self.sampler.cancel()
        self._release_source()
        if self._done is not None and not self._done.done():
            self._done.set_result(self.session)

    def _on_sampler_error(self, error: BaseException) -> None:
        if self._done is not None and not self._done.done():
            self._done.set_exception(error)

    def _release_source(self) -> None:
        if self.source is not None:
            self.source.release()
            self.source = None

    async def _teardown(self) -> None:
        if self.sampler is not None:
            await self.sampler.stop()
            _log.debug("Sampler stats: %s", self.sampler.get_stats())
            self.sampler = None
        self._release_source()
