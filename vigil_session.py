"""
Vigil Liveness Engine: Liveness Session
=======================================
Per-attempt state machine that fuses extractor units and consistency
scores into a progress value and a terminal verdict.

States:  WAITING -> IN_PROGRESS -> {PASSED | FAILED}

Transition rules (one call to process_frame per sampled frame):
  - no face             -> WAITING, positive score and progress zeroed
  - face, warm history  -> IN_PROGRESS, extractor units accumulated,
                           consistency checked, adaptive threshold tested
  - consistency > 0.7   -> inconsistency count +1, FAILED once it exceeds 5
  - clean frame         -> inconsistency count -1 (floor 0)
  - positive score >= required * (1 + 0.1 * inconsistencies) -> PASSED

Terminal states ignore further frames. Every counter the engine keeps
lives on this object and is written only by its transition methods.
"""

from __future__ import annotations

import logging
import math
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional

import numpy as np

from vigil_config import section
from vigil_consistency import ConsistencyChecker, ConsistencyReport
from vigil_logger import VigilLogger
from vigil_signals import GestureState, SignalExtractor, build_extractors
from vigil_types import (
    ChallengeType,
    FrameObservation,
    LivenessResult,
    ObservationHistory,
    SessionState,
    SessionStateError,
    Verdict,
)


_log = logging.getLogger("VigilSession")

EVENTS = ("state_changed", "progress_changed", "challenge_changed", "completed", "failed")

REASON_INCONSISTENT = "inconsistencies_detected"
REASON_TIMEOUT = "timeout"
REASON_CANCELLED = "cancelled"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class LivenessSession:
    """State machine for one verification attempt."""

    def __init__(
        self,
        challenge_type: ChallengeType = ChallengeType.BLINK,
        required_score: float = 30,
        history_size: int = 10,
        min_history: int = 5,
        fail_consistency_score: float = 0.7,
        max_inconsistencies: int = 5,
        threshold_step: float = 0.1,
        progress_smoothing: float = 0.3,
        progress_emit_delta: float = 1.0,
        timeout_s: Optional[float] = 30.0,
        extractors: Optional[Dict[ChallengeType, SignalExtractor]] = None,
        checker: Optional[ConsistencyChecker] = None,
        audit: Optional[VigilLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if required_score <= 0:
            raise ValueError("required_score must be positive")

        self.required_score = required_score
        self.min_history = min_history
        self.fail_consistency_score = fail_consistency_score
        self.max_inconsistencies = max_inconsistencies
        self.threshold_step = threshold_step
        self.progress_smoothing = progress_smoothing
        self.progress_emit_delta = progress_emit_delta
        self.timeout_s = timeout_s

        self.extractors = extractors or build_extractors()
        self.checker = checker or ConsistencyChecker()
        self.history = ObservationHistory(capacity=history_size)
        self.gesture = GestureState()
        self.audit = audit
        self._clock = clock

        self._challenge = ChallengeType(challenge_type)
        self._state = SessionState.WAITING
        self._positive_score = 0.0
        self._inconsistency_count = 0
        self._displayed_progress = 0.0
        self._emitted_progress = 0.0
        self._frames_observed = 0
        self._frames_processed = 0
        self._started_at = clock()
        self._last_descriptor = None
        self._last_report: Optional[ConsistencyReport] = None
        self._result: Optional[LivenessResult] = None
        self._failure_reason: Optional[str] = None
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)

        self._audit("session_started", challenge=self._challenge.value)

    @classmethod
    def from_config(
        cls,
        config: Optional[dict] = None,
        challenge_type: ChallengeType = ChallengeType.BLINK,
        **kwargs,
    ) -> "LivenessSession":
        """Build a session with every threshold taken from a config dict."""
        params = section(config, "session")
        params.update(kwargs)
        params.setdefault("extractors", build_extractors(config))
        params.setdefault("checker", ConsistencyChecker(**section(config, "consistency")))
        return cls(challenge_type=challenge_type, **params)

    # ── Read-only view ────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def challenge_type(self) -> ChallengeType:
        return self._challenge

    @property
    def positive_score(self) -> float:
        return self._positive_score

    @property
    def inconsistency_count(self) -> int:
        return self._inconsistency_count

    @property
    def displayed_progress(self) -> float:
        return self._displayed_progress

    @property
    def last_blink_start_time(self) -> Optional[float]:
        return self.gesture.last_blink_start_time

    @property
    def frames_observed(self) -> int:
        return self._frames_observed

    @property
    def frames_processed(self) -> int:
        return self._frames_processed

    @property
    def adaptive_threshold(self) -> float:
        return self.required_score * (1 + self.threshold_step * self._inconsistency_count)

    @property
    def result(self) -> Optional[LivenessResult]:
        return self._result

    @property
    def failure_reason(self) -> Optional[str]:
        return self._failure_reason

    @property
    def last_consistency(self) -> Optional[ConsistencyReport]:
        return self._last_report

    @property
    def elapsed_s(self) -> float:
        return self._clock() - self._started_at

    # ── Events ────────────────────────────────────────────────

    def on(self, event: str, callback: Callable) -> None:
        """Subscribe to a lifecycle event."""
        if event not in EVENTS:
            raise ValueError(f"Unknown event {event!r}; expected one of {EVENTS}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                _log.warning("Listener for %s raised", event, exc_info=True)

    def _audit(self, event: str, **data) -> None:
        if self.audit is not None:
            self.audit.log(data, event=event)

    # ── Commands ──────────────────────────────────────────────

    def switch_challenge(self) -> ChallengeType:
        """Rotate to the next challenge and restart scoring from zero."""
        if self._state.is_terminal:
            raise SessionStateError(f"Cannot switch challenge in state {self._state.value}")

        self._positive_score = 0.0
        self._reset_progress()
        self.gesture.reset()
        self._set_state(SessionState.WAITING)

        self._challenge = self._challenge.next()
        _log.info("Challenge switched to %s", self._challenge.value)
        self._audit("challenge_changed", challenge=self._challenge.value)
        self._emit("challenge_changed", self._challenge)
        return self._challenge

    def cancel(self) -> None:
        """Abort a running session; no-op once terminal."""
        if not self._state.is_terminal:
            self.fail(REASON_CANCELLED)

    def fail(self, reason: str) -> None:
        """Force the terminal FAILED state (engine-level errors, cancel)."""
        if self._state.is_terminal:
            return
        self._failure_reason = reason
        self._set_state(SessionState.FAILED)
        _log.warning("Liveness failed: %s", reason)
        self._audit(
            "session_failed",
            reason=reason,
            challenge=self._challenge.value,
            positive_score=self._positive_score,
            inconsistency_count=self._inconsistency_count,
        )
        self._emit("failed", reason)

    def check_timeout(self, now: Optional[float] = None) -> bool:
        """Fail the session if it ran past its timeout. Returns True on expiry."""
        if self.timeout_s is None or self._state.is_terminal:
            return False
        now = self._clock() if now is None else now
        if now - self._started_at >= self.timeout_s:
            self.fail(REASON_TIMEOUT)
            return True
        return False

    # ── Frame input ───────────────────────────────────────────

    def process_frame(
        self,
        observation: Optional[FrameObservation],
        frame: Optional[np.ndarray] = None,
    ) -> SessionState:
        """Single transition function: feed one sampled frame.

        Args:
            observation: Detection for this frame, or None for "no face".
            frame: Optional raw frame, kept as the snapshot if this frame passes.

        Returns:
            State after the transition.
        """
        if self._state.is_terminal:
            return self._state

        self._frames_observed += 1

        if observation is None:
            self._on_face_lost()
            return self._state

        self.history.push(observation)
        if observation.descriptor is not None:
            self._last_descriptor = observation.descriptor

        if len(self.history.expressions) < self.min_history:
            self.history.previous_landmarks = observation.landmarks
            return self._state

        self._set_state(SessionState.IN_PROGRESS)
        self._frames_processed += 1

        extractor = self.extractors[self._challenge]
        reading = extractor.extract(observation, self.history, self.gesture)
        self._positive_score += reading.units

        report = self.checker.check(observation, self.history)
        self.history.previous_landmarks = observation.landmarks
        self._last_report = report

        if report.score > self.fail_consistency_score:
            self._inconsistency_count += 1
            _log.debug(
                "Inconsistent frame (%s score=%.2f) count=%d",
                report.rule, report.score, self._inconsistency_count,
            )
        else:
            self._inconsistency_count = max(0, self._inconsistency_count - 1)

        self._update_progress()

        if self.audit is not None:
            self.audit.log_frame({
                "challenge": self._challenge.value,
                "units": reading.units,
                "signal": reading.explanation,
                "positive_score": self._positive_score,
                "consistency": report.to_dict(),
                "inconsistency_count": self._inconsistency_count,
                "progress": round(self._displayed_progress, 2),
            })

        if self._inconsistency_count > self.max_inconsistencies:
            self.fail(REASON_INCONSISTENT)
        elif self._positive_score >= self.adaptive_threshold:
            self._pass(observation, frame)

        return self._state

    # ── Internals ─────────────────────────────────────────────

    def _set_state(self, new_state: SessionState) -> None:
        if new_state == self._state:
            return
        old = self._state
        self._state = new_state
        _log.debug("State %s -> %s", old.value, new_state.value)
        self._audit("state_changed", old=old.value, new=new_state.value)
        self._emit("state_changed", old, new_state)

    def _on_face_lost(self) -> None:
        self._positive_score = 0.0
        self._reset_progress()
        self.gesture.reset()
        self.history.forget_landmarks()
        self._set_state(SessionState.WAITING)

    def _reset_progress(self) -> None:
        self._displayed_progress = 0.0
        if self._emitted_progress != 0.0:
            self._emitted_progress = 0.0
            self._emit("progress_changed", 0.0)

    def _update_progress(self) -> None:
        raw = min(100, _round_half_up(self._positive_score / self.required_score * 100))
        alpha = self.progress_smoothing
        self._displayed_progress = (1 - alpha) * self._displayed_progress + alpha * raw
        if abs(self._displayed_progress - self._emitted_progress) > self.progress_emit_delta:
            self._emitted_progress = self._displayed_progress
            self._emit("progress_changed", round(self._displayed_progress, 1))

    def _pass(self, observation: FrameObservation, frame: Optional[np.ndarray]) -> None:
        descriptor = observation.descriptor or self._last_descriptor
        self._result = LivenessResult(
            verdict=Verdict.PASSED,
            challenge_type=self._challenge,
            descriptor=descriptor,
            captured_at=time.time(),
            liveness_score=self._positive_score / max(1, self._frames_observed),
            positive_score=self._positive_score,
            frames_observed=self._frames_observed,
            inconsistency_count=self._inconsistency_count,
            snapshot=frame,
        )
        self._set_state(SessionState.PASSED)
        _log.info(
            "Liveness passed: challenge=%s score=%.1f/%.1f frames=%d",
            self._challenge.value,
            self._positive_score,
            self.adaptive_threshold,
            self._frames_observed,
        )
        self._audit("session_passed", **self._result.to_dict())
        self._emit("completed", self._result)
