"""
Vigil Liveness Engine: Blink Extractor
======================================
Counts a blink on the closed -> open transition of both eyes, but only
when the eyes stayed closed for a plausible duration. Detector noise
(single-sample dropouts) is shorter than the floor; a held eye closure
or a paused photo is longer than the ceiling.
"""

import math

import numpy as np

from vigil_types import ChallengeType, FrameObservation, ObservationHistory
from .base import GestureState, SignalExtractor, SignalReading


def eye_aspect_ratio(eye: np.ndarray) -> float:
    """Vertical opening / horizontal width for a 6-point eye contour.

    Points follow the 68-landmark order: 0 = outer corner, 3 = inner
    corner, 1 / 5 = upper / lower lid.
    """
    height = abs(float(eye[1][1]) - float(eye[5][1]))
    width = abs(float(eye[0][0]) - float(eye[3][0]))
    if width < 1e-6:
        return math.inf
    return height / width


class BlinkExtractor(SignalExtractor):
    challenge = ChallengeType.BLINK

    def __init__(
        self,
        closed_ratio: float = 0.15,
        min_closed_ms: float = 50.0,
        max_closed_ms: float = 500.0,
        units: int = 3,
    ):
        self.closed_ratio = closed_ratio
        self.min_closed_ms = min_closed_ms
        self.max_closed_ms = max_closed_ms
        self.units = units

    def is_closed(self, observation: FrameObservation) -> bool:
        left = eye_aspect_ratio(observation.landmarks.left_eye)
        right = eye_aspect_ratio(observation.landmarks.right_eye)
        return left < self.closed_ratio and right < self.closed_ratio

    def extract(
        self,
        observation: FrameObservation,
        history: ObservationHistory,
        gesture: GestureState,
    ) -> SignalReading:
        now = observation.timestamp

        if self.is_closed(observation):
            if gesture.last_blink_start_time is None:
                gesture.last_blink_start_time = now
            return SignalReading(0, 0.0, "eyes closed")

        if gesture.last_blink_start_time is None:
            return SignalReading(0, 0.0, "eyes open")

        closed_ms = (now - gesture.last_blink_start_time) * 1000.0
        gesture.last_blink_start_time = None

        if self.min_closed_ms <= closed_ms <= self.max_closed_ms:
            return SignalReading(self.units, closed_ms, f"blink {closed_ms:.0f} ms")
        return SignalReading(0, closed_ms, f"closure {closed_ms:.0f} ms rejected")
