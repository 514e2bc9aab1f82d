"""
Vigil Liveness Engine: Face Analyzer Interface
==============================================
The engine never runs a detection model itself. It consumes any
FaceAnalyzer that turns a frame into at most one FrameObservation.

Model weights are loaded once per process per analyzer instance:
ModelLoader.ensure_loaded() is idempotent and hands every caller the
same in-flight future, so concurrent sessions never trigger a second
load while the first is still running.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import numpy as np

from vigil_types import FrameObservation, ModelLoadError


_log = logging.getLogger("VigilAnalyzer")

ProgressCallback = Callable[[int], None]


class FaceAnalyzer(ABC):
    """External capability: landmarks, expressions and descriptor per frame."""

    # Loaded in order; progress is reported as 25/50/75/100.
    MODEL_STAGES = (
        "face_detector",
        "face_landmark_68",
        "face_recognition",
        "face_expression",
    )

    async def load_model(self, stage: str) -> None:
        """Load one model stage. Analyzers without weights keep the no-op."""
        return None

    @abstractmethod
    async def detect(self, frame: np.ndarray) -> Optional[FrameObservation]:
        """Return the primary face in the frame, or None.

        May raise; the sampler treats any exception as "no face".
        """


class SyncAnalyzerAdapter(FaceAnalyzer):
    """Wraps a blocking detect function so it runs off the event loop."""

    def __init__(self, detect_fn: Callable[[np.ndarray], Optional[FrameObservation]]):
        self._detect_fn = detect_fn

    async def detect(self, frame: np.ndarray) -> Optional[FrameObservation]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._detect_fn, frame)


class ModelLoader:
    """Process-wide, load-once gate for one analyzer implementation."""

    def __init__(self, analyzer: FaceAnalyzer):
        self._analyzer = analyzer
        self._task: Optional[asyncio.Task] = None
        self._loaded = False
        self._progress_callbacks: list = []

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def ensure_loaded(self, on_progress: Optional[ProgressCallback] = None) -> "asyncio.Future":
        """Start loading if needed and return the shared ready future.

        Must be called from within a running event loop.
        """
        loop = asyncio.get_running_loop()

        if self._loaded:
            done = loop.create_future()
            done.set_result(None)
            if on_progress:
                on_progress(100)
            return done

        if on_progress:
            self._progress_callbacks.append(on_progress)

        in_flight = (
            self._task is not None
            and not self._task.done()
            and self._task.get_loop() is loop
        )
        if not in_flight:
            self._task = loop.create_task(self._load_all())
        return self._task

    async def _load_all(self) -> None:
        stage = None
        try:
            # Duck-typed analyzers without stages load nothing.
            stages = getattr(self._analyzer, "MODEL_STAGES", ())
            load_model = getattr(self._analyzer, "load_model", None)
            for i, stage in enumerate(stages, start=1):
                _log.info("Loading model stage %s (%d/%d)", stage, i, len(stages))
                if load_model is not None:
                    await load_model(stage)
                self._report(int(round(i / len(stages) * 100)))
            if not stages:
                self._report(100)
        except Exception as e:
            _log.error("Model loading failed at stage %s: %s", stage, e)
            self._progress_callbacks.clear()
            raise ModelLoadError(f"Failed to load {stage}: {e}") from e

        self._loaded = True
        self._progress_callbacks.clear()
        _log.info("All analyzer models ready (%s)", type(self._analyzer).__name__)

    def _report(self, percent: int) -> None:
        for callback in list(self._progress_callbacks):
            try:
                callback(percent)
            except Exception:
                _log.warning("Progress callback raised", exc_info=True)


# Keyed by id(); each loader keeps its analyzer alive, so ids are never reused.
_LOADERS: Dict[int, ModelLoader] = {}


def get_model_loader(analyzer: FaceAnalyzer) -> ModelLoader:
    """Return the process-wide loader for this analyzer instance."""
    loader = _LOADERS.get(id(analyzer))
    if loader is None:
        loader = ModelLoader(analyzer)
        _LOADERS[id(analyzer)] = loader
    return loader


def reset_model_loaders() -> None:
    """Forget every loaded model (used between test cases)."""
    _LOADERS.clear()


def load_analyzer(path: str, **kwargs: Any) -> FaceAnalyzer:
    """Instantiate an analyzer from a "package.module:ClassName" path."""
    if not path or ":" not in path:
        raise ValueError(f"Analyzer path must look like 'module:Class', got {path!r}")
    module_name, class_name = path.split(":", 1)
    module = importlib.import_module(module_name)
    cls = getattr(module, class_name)
    analyzer = cls(**kwargs)
    if not isinstance(analyzer, FaceAnalyzer):
        if callable(getattr(analyzer, "detect", None)) and not asyncio.iscoroutinefunction(analyzer.detect):
            return SyncAnalyzerAdapter(analyzer.detect)
        if not callable(getattr(analyzer, "detect", None)):
            raise TypeError(f"{path} does not provide a detect() method")
    return analyzer
