"""
Vigil Liveness Engine: Shared Test Helpers
==========================================
Synthetic 68-point faces and observations. No camera, no model.

Face geometry (640x480 frame, face centred at 320, 240):
  - eyes are 30 px wide; open height 9 px (ratio 0.30), closed 1.5 px (0.05)
  - jaw is a 17-point half circle of radius 120
  - turn=t compresses the right half of the jaw by factor (1 - t)
"""

from __future__ import annotations

import asyncio
import math
import sys
from pathlib import Path
from typing import Optional

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from vigil_analyzer import FaceAnalyzer
from vigil_types import FrameObservation, LandmarkSet


CX, CY = 320.0, 240.0
EYE_WIDTH = 30.0
EYE_OPEN = 9.0
EYE_CLOSED = 1.5
DESCRIPTOR = tuple(round(0.01 * i, 2) for i in range(128))


def _eye(x0: float, y: float, height: float) -> list:
    w = EYE_WIDTH
    return [
        (x0, y),
        (x0 + w / 3, y - height / 2),
        (x0 + 2 * w / 3, y - height / 2),
        (x0 + w, y),
        (x0 + 2 * w / 3, y + height / 2),
        (x0 + w / 3, y + height / 2),
    ]


def make_points(eyes_open: bool = True, dx: float = 0.0, turn: float = 0.0) -> np.ndarray:
    """Return a (68, 2) landmark array for a synthetic face."""
    pts = []
    for i in range(17):
        angle = math.pi * (1 - i / 16)
        x = CX + 120 * math.cos(angle)
        if x > CX:
            x = CX + (x - CX) * (1 - turn)
        pts.append((x, CY + 120 * math.sin(angle) * 0.5 + 40))
    pts += [(250 + 10 * i, 190) for i in range(5)]          # right eyebrow
    pts += [(340 + 10 * i, 190) for i in range(5)]          # left eyebrow
    pts += [(CX, 200 + 10 * i) for i in range(4)]           # nose bridge
    pts += [(300 + 10 * i, 245) for i in range(5)]          # nose base
    height = EYE_OPEN if eyes_open else EYE_CLOSED
    pts += _eye(260, 205, height)
    pts += _eye(350, 205, height)
    pts += [(280 + 4 * i, 280) for i in range(20)]          # mouth
    arr = np.array(pts, dtype=np.float64)
    arr[:, 0] += dx
    return arr


def make_expressions(happy: float = 0.0, **others) -> dict:
    expressions = {"neutral": max(0.0, 1.0 - happy - sum(others.values())), "happy": happy}
    expressions.update(others)
    return expressions


def make_observation(
    t: float = 0.0,
    eyes_open: bool = True,
    happy: float = 0.0,
    dx: float = 0.0,
    turn: float = 0.0,
    score: float = 0.95,
    descriptor=DESCRIPTOR,
    illumination: Optional[float] = None,
    **expressions,
) -> FrameObservation:
    return FrameObservation(
        timestamp=t,
        detection_score=score,
        landmarks=LandmarkSet.from_68(make_points(eyes_open, dx, turn)),
        expressions=make_expressions(happy, **expressions),
        descriptor=descriptor,
        illumination=illumination,
    )


def blink_script(blinks: int, warmup: int = 4, filler: int = 0, step: float = 0.1) -> list:
    """Open-eyed warm-up, then `blinks` closed/open pairs, then open fillers."""
    script = [make_observation(t=i * step) for i in range(warmup)]
    t = warmup * step
    for _ in range(blinks):
        script.append(make_observation(t=t, eyes_open=False))
        script.append(make_observation(t=t + step))
        t += 2 * step
    for _ in range(filler):
        script.append(make_observation(t=t))
        t += step
    return script


class ScriptedAnalyzer(FaceAnalyzer):
    """Maps each frame (an index into the script) to a scripted observation."""

    def __init__(self, script=None):
        self.script = list(script or [])
        self.calls = 0
        self.stages_loaded = []

    async def load_model(self, stage: str) -> None:
        self.stages_loaded.append(stage)

    async def detect(self, frame):
        self.calls += 1
        if isinstance(frame, (int, np.integer)) and 0 <= frame < len(self.script):
            return self.script[frame]
        return None


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def observation():
    return make_observation()
