"""
Vigil Liveness Engine: Consistency Checker
==========================================
Cross-frame anti-spoofing heuristics, independent of the active
challenge. Each rule is a separate check; the frame's inconsistency
score is the highest triggered rule score, never a sum.

Rules:
  1. Landmark jump       - face moved implausibly far between samples
  2. Expression jump     - expression vector changed abruptly
  3. Illumination freeze - lighting too constant (looping clip)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from vigil_types import FrameObservation, LandmarkSet, ObservationHistory


@dataclass(frozen=True)
class ConsistencyReport:
    score: float                       # 0.0 when no rule triggered
    rule: Optional[str]                # name of the winning rule
    landmark_distance: float = 0.0
    expression_jump: float = 0.0
    illumination_variance: Optional[float] = None

    @property
    def triggered(self) -> bool:
        return self.score > 0.0

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "rule": self.rule,
            "landmark_distance": round(self.landmark_distance, 3),
            "expression_jump": round(self.expression_jump, 4),
            "illumination_variance": self.illumination_variance,
        }


def landmark_distance(previous: LandmarkSet, current: LandmarkSet) -> float:
    """Mean Euclidean displacement of corresponding landmark points."""
    a = previous.all_points()
    b = current.all_points()
    if a.shape != b.shape or a.size == 0:
        return 0.0
    return float(np.mean(np.linalg.norm(b - a, axis=1)))


class ConsistencyChecker:
    """Scores one accepted frame against the session's history."""

    def __init__(
        self,
        landmark_jump_px: float = 50.0,
        landmark_jump_score: float = 0.8,
        expression_jump: float = 3.5,
        expression_jump_score: float = 0.9,
        illumination_variance: float = 1e-4,
        illumination_score: float = 0.7,
        illumination_min_samples: int = 6,
    ):
        self.landmark_jump_px = landmark_jump_px
        self.landmark_jump_score = landmark_jump_score
        self.expression_jump = expression_jump
        self.expression_jump_score = expression_jump_score
        self.illumination_variance = illumination_variance
        self.illumination_score = illumination_score
        self.illumination_min_samples = illumination_min_samples

    def check(self, observation: FrameObservation, history: ObservationHistory) -> ConsistencyReport:
        """Run all rules. Expects the observation already pushed into history."""
        score = 0.0
        rule: Optional[str] = None

        # Rule 1: landmark jump
        distance = 0.0
        if history.previous_landmarks is not None:
            distance = landmark_distance(history.previous_landmarks, observation.landmarks)
            if distance > self.landmark_jump_px and self.landmark_jump_score > score:
                score, rule = self.landmark_jump_score, "landmark_jump"

        # Rule 2: expression jump between the last two vectors
        jump = 0.0
        if len(history.expressions) >= 2:
            jump = float(np.sum(np.abs(history.expressions[-1] - history.expressions[-2])))
            if jump > self.expression_jump and self.expression_jump_score > score:
                score, rule = self.expression_jump_score, "expression_jump"

        # Rule 3: illumination freeze
        variance: Optional[float] = None
        if len(history.illumination) >= self.illumination_min_samples:
            variance = float(np.var(list(history.illumination)))
            if variance < self.illumination_variance and self.illumination_score > score:
                score, rule = self.illumination_score, "illumination_freeze"

        return ConsistencyReport(
            score=score,
            rule=rule,
            landmark_distance=distance,
            expression_jump=jump,
            illumination_variance=variance,
        )
