"""
Vigil Liveness Engine: Head-Turn Extractor
==========================================
Uses jaw-outline asymmetry as a yaw proxy. A turned head pushes one
half of the jaw towards the midline. The asymmetry must also evolve
smoothly across the rolling window: a static face never turns, and an
erratic sequence of jumps is typical of replayed or spliced video.
"""

import numpy as np

from vigil_types import ChallengeType, FrameObservation, ObservationHistory
from .base import GestureState, SignalExtractor, SignalReading


def jaw_asymmetry(jaw: np.ndarray) -> float:
    """|mean offset(left half) - mean offset(right half)| / mean of both.

    Offsets are horizontal distances to the midpoint of the jaw's x-range.
    """
    jaw = np.asarray(jaw, dtype=np.float64)
    if len(jaw) < 2:
        return 0.0
    half = len(jaw) // 2
    left, right = jaw[:half], jaw[half:]

    xs = jaw[:, 0]
    mid_x = (xs.min() + xs.max()) / 2.0
    left_dist = float(np.mean(np.abs(left[:, 0] - mid_x)))
    right_dist = float(np.mean(np.abs(right[:, 0] - mid_x)))

    denom = (left_dist + right_dist) / 2.0
    if denom <= 1e-9:
        return 0.0
    return abs(left_dist - right_dist) / denom


def movement_smoothness(samples) -> float:
    """1 - mean |successive difference|; 0.0 with fewer than two samples."""
    values = np.asarray(list(samples), dtype=np.float64)
    if len(values) < 2:
        return 0.0
    return 1.0 - float(np.mean(np.abs(np.diff(values))))


class HeadTurnExtractor(SignalExtractor):
    challenge = ChallengeType.HEAD_TURN

    def __init__(self, min_asymmetry: float = 0.2, min_smoothness: float = 0.7):
        self.min_asymmetry = min_asymmetry
        self.min_smoothness = min_smoothness

    def extract(
        self,
        observation: FrameObservation,
        history: ObservationHistory,
        gesture: GestureState,
    ) -> SignalReading:
        asymmetry = jaw_asymmetry(observation.landmarks.jaw_outline)
        history.push_asymmetry(asymmetry)
        smoothness = movement_smoothness(history.asymmetry)

        units = int(asymmetry > self.min_asymmetry and smoothness > self.min_smoothness)
        return SignalReading(
            units, asymmetry, f"asymmetry={asymmetry:.2f} smoothness={smoothness:.2f}"
        )
