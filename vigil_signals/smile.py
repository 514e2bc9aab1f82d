"""
Vigil Liveness Engine: Smile Extractor
======================================
A live smile ramps up over several frames. A happy probability that
jumps far above its own recent mean is treated as a snapped-on fake
(photo swap, replayed clip) and does not score.
"""

import numpy as np

from vigil_types import ChallengeType, FrameObservation, ObservationHistory
from .base import GestureState, SignalExtractor, SignalReading


class SmileExtractor(SignalExtractor):
    challenge = ChallengeType.SMILE

    def __init__(
        self,
        happy_threshold: float = 0.7,
        max_deviation: float = 0.2,
        window: int = 5,
        sustained_frames: int = 10,
    ):
        self.happy_threshold = happy_threshold
        self.max_deviation = max_deviation
        self.window = window
        self.sustained_frames = sustained_frames

    def extract(
        self,
        observation: FrameObservation,
        history: ObservationHistory,
        gesture: GestureState,
    ) -> SignalReading:
        happy = observation.expression("happy")
        recent = history.recent_expression("happy", self.window) or [happy]
        mean = float(np.mean(recent))
        deviation = abs(happy - mean)

        if happy <= self.happy_threshold or deviation >= self.max_deviation:
            gesture.sustained_smile_frames = 0
            return SignalReading(0, happy, f"happy={happy:.2f} dev={deviation:.2f}")

        gesture.sustained_smile_frames += 1
        units = 1
        # Bonus once the smile has been held past the sustain window
        if gesture.sustained_smile_frames > self.sustained_frames:
            units += 1
        return SignalReading(
            units, happy, f"smile held {gesture.sustained_smile_frames} frames"
        )
