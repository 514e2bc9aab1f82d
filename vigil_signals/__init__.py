"""
Vigil Liveness Engine: Signal Extractors Package
================================================
One extractor per liveness challenge.
"""
from typing import Optional

from vigil_config import section
from vigil_types import ChallengeType

from .base import GestureState, SignalExtractor, SignalReading
from .blink import BlinkExtractor, eye_aspect_ratio
from .smile import SmileExtractor
from .head_turn import HeadTurnExtractor, jaw_asymmetry, movement_smoothness


def build_extractors(config: Optional[dict] = None) -> dict:
    """Map every ChallengeType to a configured extractor."""
    signals = section(config, "signals")
    return {
        ChallengeType.BLINK: BlinkExtractor(**signals["blink"]),
        ChallengeType.SMILE: SmileExtractor(**signals["smile"]),
        ChallengeType.HEAD_TURN: HeadTurnExtractor(**signals["head_turn"]),
    }
