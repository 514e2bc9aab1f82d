"""
Vigil Liveness Engine: Signal Extractor Interface
=================================================
Defines the `SignalExtractor` base class. One extractor exists per
challenge type; each turns the current observation plus the session's
rolling history into a non-negative number of signal units.

Extractors hold configuration only. Every piece of cross-frame state
(blink start time, smile streak, asymmetry samples) lives in the
session-owned GestureState / ObservationHistory passed in, so the
session's transition function is the only writer.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from vigil_types import ChallengeType, FrameObservation, ObservationHistory


@dataclass
class GestureState:
    """Per-session gesture counters mutated by the active extractor."""
    last_blink_start_time: Optional[float] = None
    sustained_smile_frames: int = 0

    def reset(self) -> None:
        self.last_blink_start_time = None
        self.sustained_smile_frames = 0


@dataclass(frozen=True)
class SignalReading:
    """One extractor vote for one frame."""
    units: int
    metric_value: float
    explanation: str


class SignalExtractor(ABC):
    """Base class for challenge gesture detectors."""

    @property
    @abstractmethod
    def challenge(self) -> ChallengeType:
        """Challenge type this extractor scores."""

    @abstractmethod
    def extract(
        self,
        observation: FrameObservation,
        history: ObservationHistory,
        gesture: GestureState,
    ) -> SignalReading:
        """Score one frame.

        Args:
            observation: Current detection (already pushed into history).
            history: Session rolling buffers.
            gesture: Session gesture counters.

        Returns:
            SignalReading with units >= 0 (0 when the gesture is absent).
        """
