"""
Vigil Liveness Engine: Media Sources
====================================
Owns ALL camera interaction. No other module touches
cv2.VideoCapture directly.

Features:
  - Fatal CameraUnavailableError when the device cannot be opened
  - Per-frame validation (shape, dtype, channels, brightness)
  - paused / ended flags observed by the frame sampler
  - Idempotent release, context manager support
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Iterable, Optional, Union

import cv2
import numpy as np

from vigil_types import CameraUnavailableError


_log = logging.getLogger("VigilCamera")


class MediaSource(ABC):
    """A live frame source with observable paused/ended flags."""

    def __init__(self) -> None:
        self._paused = False
        self._ended = False
        self._released = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def ended(self) -> bool:
        return self._ended or self._released

    @property
    def released(self) -> bool:
        return self._released

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    @abstractmethod
    def get_frame(self) -> Optional[np.ndarray]:
        """Return the current frame, or None if none is available."""

    def release(self) -> None:
        self._released = True

    def __enter__(self) -> "MediaSource":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class CameraSource(MediaSource):
    """Validated OpenCV capture (webcam index or video file path)."""

    MIN_HEIGHT: int = 120
    MIN_WIDTH: int = 160
    EXPECTED_CHANNELS: int = 3
    MIN_MEAN_BRIGHTNESS: float = 5.0    # lens cap / hardware failure
    MAX_MEAN_BRIGHTNESS: float = 250.0  # sensor saturation
    FPS_WINDOW: int = 30

    def __init__(
        self,
        source: Union[int, str] = 0,
        width: int = 640,
        height: int = 480,
        fps: int = 30,
        backend: int = cv2.CAP_ANY,
    ) -> None:
        super().__init__()
        self._source = source
        self._is_file = isinstance(source, str)

        self._cap = cv2.VideoCapture(source, backend)
        if not self._cap.isOpened():
            self._cap.release()
            self._released = True
            raise CameraUnavailableError(
                f"Cannot open video source {source!r} (permission denied or device busy)"
            )

        if not self._is_file:
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
            self._cap.set(cv2.CAP_PROP_FPS, fps)
            self._cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        self._resolution = (
            int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        self._frames_total = 0
        self._frames_dropped = 0
        self._frame_times: deque = deque(maxlen=self.FPS_WINDOW)

        _log.info("Camera opened: source=%r resolution=%s", source, self._resolution)

    def get_frame(self) -> Optional[np.ndarray]:
        if self.ended:
            return None
        self._frames_total += 1
        ret, frame = self._cap.read()

        if not ret and self._is_file:
            self._ended = True
            _log.info("Video source %r ended", self._source)
            return None

        if not self._validate_frame(ret, frame):
            self._frames_dropped += 1
            return None

        self._frame_times.append(time.monotonic())
        return frame

    def get_health_status(self) -> dict:
        return {
            "connected": (not self._released) and self._cap.isOpened(),
            "fps_actual": self._calculate_fps(),
            "frames_total": self._frames_total,
            "frames_dropped": self._frames_dropped,
            "resolution": self._resolution,
        }

    def release(self) -> None:
        """Stop the capture device; safe to call more than once."""
        if self._released:
            return
        _log.info(
            "Camera releasing: total=%d dropped=%d",
            self._frames_total,
            self._frames_dropped,
        )
        self._cap.release()
        super().release()

    def _validate_frame(self, ret: bool, frame: Optional[np.ndarray]) -> bool:
        if not ret or frame is None:
            _log.debug("Validation FAIL: no frame returned")
            return False
        if frame.ndim != 3 or frame.shape[2] != self.EXPECTED_CHANNELS:
            _log.debug("Validation FAIL: shape=%s", frame.shape)
            return False
        if frame.dtype != np.uint8:
            _log.debug("Validation FAIL: dtype=%s", frame.dtype)
            return False
        h, w = frame.shape[:2]
        if h < self.MIN_HEIGHT or w < self.MIN_WIDTH:
            _log.debug("Validation FAIL: resolution %dx%d", w, h)
            return False
        mean_brightness = float(frame.mean())
        if not self.MIN_MEAN_BRIGHTNESS < mean_brightness < self.MAX_MEAN_BRIGHTNESS:
            _log.debug("Validation FAIL: mean brightness %.2f", mean_brightness)
            return False
        return True

    def _calculate_fps(self) -> float:
        if len(self._frame_times) < 2:
            return 0.0
        elapsed = self._frame_times[-1] - self._frame_times[0]
        if elapsed <= 0:
            return 0.0
        return (len(self._frame_times) - 1) / elapsed


class ScriptedSource(MediaSource):
    """Replays a fixed sequence of frames; ends when exhausted.

    Items may be arrays or any object the paired analyzer understands.
    """

    def __init__(self, frames: Iterable, loop: bool = False) -> None:
        super().__init__()
        self._frames = list(frames)
        self._loop = loop
        self._index = 0

    @property
    def position(self) -> int:
        return self._index

    def get_frame(self):
        if self.ended:
            return None
        if self._index >= len(self._frames):
            if not self._loop or not self._frames:
                self._ended = True
                return None
            self._index = 0
        frame = self._frames[self._index]
        self._index += 1
        return frame


def frame_illumination(frame: np.ndarray) -> Optional[float]:
    """Normalised mean grey level in [0, 1], or None for non-image frames."""
    if not isinstance(frame, np.ndarray) or frame.size == 0:
        return None
    if frame.ndim == 3 and frame.shape[2] == 3 and frame.dtype == np.uint8:
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    elif frame.ndim == 3:
        gray = frame.mean(axis=2)
    elif frame.ndim == 2:
        gray = frame
    else:
        return None
    return float(np.mean(gray)) / 255.0
