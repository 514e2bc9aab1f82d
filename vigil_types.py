"""
Vigil Liveness Engine: Shared Types
===================================
Data model passed between the sampler, extractors, consistency
checker, session and finalizer, plus the error taxonomy.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Deque, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np


# Expression categories produced by the face analyzer, in canonical order.
EXPRESSIONS: Tuple[str, ...] = (
    "neutral",
    "happy",
    "sad",
    "angry",
    "fearful",
    "disgusted",
    "surprised",
)

# 68-point landmark layout (iBUG 300-W) split into named groups.
LANDMARK_GROUPS_68: Dict[str, Tuple[int, int]] = {
    "jaw_outline": (0, 17),
    "right_eyebrow": (17, 22),
    "left_eyebrow": (22, 27),
    "nose": (27, 36),
    "left_eye": (36, 42),
    "right_eye": (42, 48),
    "mouth": (48, 68),
}


class ChallengeType(str, Enum):
    BLINK = "blink"
    SMILE = "smile"
    HEAD_TURN = "head-turn"

    def next(self) -> "ChallengeType":
        """Round-robin successor: blink -> smile -> head-turn -> blink."""
        order = list(ChallengeType)
        return order[(order.index(self) + 1) % len(order)]


class SessionState(str, Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.PASSED, SessionState.FAILED)


class Verdict(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


# ─── Errors ──────────────────────────────────────────────────

class VigilError(Exception):
    """Base class for all engine errors."""


class AnalyzerError(VigilError):
    """The face analyzer failed on a single frame (transient)."""


class ModelLoadError(VigilError):
    """Analyzer models could not be loaded."""


class CameraUnavailableError(VigilError):
    """Camera permission denied, device busy or missing."""


class SessionStateError(VigilError):
    """A command was issued in a state that does not allow it."""


class FinalizeError(VigilError):
    """Forwarding a passed result to the biometric API failed."""

    def __init__(self, message: str, recoverable: bool = True, status_code: Optional[int] = None):
        super().__init__(message)
        self.recoverable = recoverable
        self.status_code = status_code


class ProofExpiredError(FinalizeError):
    """The liveness proof is older than the API accepts for its challenge."""

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)


# ─── Observations ────────────────────────────────────────────

def _frozen_points(points) -> np.ndarray:
    arr = np.array(points, dtype=np.float64).reshape(-1, 2)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class LandmarkSet:
    """Named groups of (x, y) pixel landmarks for one face."""
    groups: Mapping[str, np.ndarray]

    def __post_init__(self):
        object.__setattr__(
            self, "groups", {name: _frozen_points(pts) for name, pts in self.groups.items()}
        )

    @classmethod
    def from_68(cls, points: Sequence) -> "LandmarkSet":
        """Build from a flat 68-point array (iBUG ordering)."""
        arr = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if arr.shape[0] != 68:
            raise ValueError(f"Expected 68 landmarks, got {arr.shape[0]}")
        return cls({name: arr[a:b] for name, (a, b) in LANDMARK_GROUPS_68.items()})

    def group(self, name: str) -> np.ndarray:
        return self.groups[name]

    @property
    def left_eye(self) -> np.ndarray:
        return self.groups["left_eye"]

    @property
    def right_eye(self) -> np.ndarray:
        return self.groups["right_eye"]

    @property
    def jaw_outline(self) -> np.ndarray:
        return self.groups["jaw_outline"]

    def all_points(self) -> np.ndarray:
        """Every point, groups concatenated in sorted-name order."""
        if not self.groups:
            return np.empty((0, 2))
        return np.concatenate([self.groups[k] for k in sorted(self.groups)], axis=0)


@dataclass(frozen=True)
class FrameObservation:
    """One face detection for one sampled frame."""
    timestamp: float                      # seconds, monotonic clock
    detection_score: float
    landmarks: LandmarkSet
    expressions: Mapping[str, float]
    descriptor: Optional[Tuple[float, ...]] = None
    illumination: Optional[float] = None  # normalised mean luminance [0, 1]
    bbox: Optional[Tuple[float, float, float, float]] = None

    def __post_init__(self):
        object.__setattr__(self, "expressions", {k: float(v) for k, v in self.expressions.items()})
        if self.descriptor is not None:
            object.__setattr__(self, "descriptor", tuple(float(v) for v in self.descriptor))

    def expression(self, name: str) -> float:
        return self.expressions.get(name, 0.0)

    def expression_vector(self) -> np.ndarray:
        return np.array([self.expression(name) for name in EXPRESSIONS], dtype=np.float64)

    def with_illumination(self, value: float) -> "FrameObservation":
        return replace(self, illumination=float(value))


@dataclass
class ObservationHistory:
    """Bounded rolling buffers owned by one liveness session."""
    capacity: int = 10
    expressions: Deque[np.ndarray] = field(init=False)
    asymmetry: Deque[float] = field(init=False)
    illumination: Deque[float] = field(init=False)
    previous_landmarks: Optional[LandmarkSet] = None

    def __post_init__(self):
        self.expressions = deque(maxlen=self.capacity)
        self.asymmetry = deque(maxlen=self.capacity)
        self.illumination = deque(maxlen=self.capacity)

    def push(self, observation: FrameObservation) -> None:
        """Record the per-frame samples every accepted frame contributes."""
        self.expressions.append(observation.expression_vector())
        if observation.illumination is not None:
            self.illumination.append(float(observation.illumination))

    def push_asymmetry(self, value: float) -> None:
        self.asymmetry.append(float(value))

    def recent_expression(self, name: str, count: int) -> list:
        idx = EXPRESSIONS.index(name)
        return [float(vec[idx]) for vec in list(self.expressions)[-count:]]

    def forget_landmarks(self) -> None:
        self.previous_landmarks = None

    def clear(self) -> None:
        self.expressions.clear()
        self.asymmetry.clear()
        self.illumination.clear()
        self.previous_landmarks = None


# ─── Results ─────────────────────────────────────────────────

@dataclass(frozen=True)
class LivenessResult:
    """Terminal artifact of a passed session."""
    verdict: Verdict
    challenge_type: ChallengeType
    descriptor: Optional[Tuple[float, ...]]
    captured_at: float                    # epoch seconds
    liveness_score: float
    positive_score: float = 0.0
    frames_observed: int = 0
    inconsistency_count: int = 0
    snapshot: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    @property
    def age_s(self) -> float:
        return time.time() - self.captured_at

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("snapshot")
        data["verdict"] = self.verdict.value
        data["challenge_type"] = self.challenge_type.value
        return data
