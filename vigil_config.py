"""
Vigil Liveness Engine: Configuration
====================================
Loads config.yaml and exposes the defaults every component falls
back to when it is built without explicit arguments.

Resolution order:
  1. Explicit constructor arguments
  2. The YAML file named by VIGIL_CONFIG (or the bundled config.yaml)
  3. DEFAULT_CONFIG below
"""

from __future__ import annotations

import copy
import logging
import os
from typing import Any, Optional

import yaml


_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, "config.yaml")


DEFAULT_CONFIG: dict = {
    "sampler": {"interval_ms": 100},
    "session": {
        "required_score": 30,
        "history_size": 10,
        "min_history": 5,
        "fail_consistency_score": 0.7,
        "max_inconsistencies": 5,
        "threshold_step": 0.1,
        "progress_smoothing": 0.3,
        "progress_emit_delta": 1.0,
        "timeout_s": 30.0,
    },
    "signals": {
        "blink": {"closed_ratio": 0.15, "min_closed_ms": 50, "max_closed_ms": 500, "units": 3},
        "smile": {"happy_threshold": 0.7, "max_deviation": 0.2, "window": 5, "sustained_frames": 10},
        "head_turn": {"min_asymmetry": 0.2, "min_smoothness": 0.7},
    },
    "consistency": {
        "landmark_jump_px": 50.0,
        "landmark_jump_score": 0.8,
        "expression_jump": 3.5,
        "expression_jump_score": 0.9,
        "illumination_variance": 1e-4,
        "illumination_score": 0.7,
        "illumination_min_samples": 6,
    },
    "camera": {"camera_id": 0, "width": 640, "height": 480, "fps": 30},
    "analyzer": {"path": None, "min_detection_score": 0.6},
    "api": {
        "base_url": "http://localhost:3000",
        "register_path": "/api/biometry/register",
        "verify_path": "/api/biometry/verify",
        "timeout_s": 10.0,
        "proof_max_age_s": {"blink": 30, "smile": 20, "head-turn": 45, "default": 30},
    },
    "logging": {"level": "INFO", "audit_log_path": "logs/vigil_audit.jsonl"},
}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None, overrides: Optional[dict] = None) -> dict:
    """Load configuration from config.yaml merged over DEFAULT_CONFIG."""
    target = path or os.environ.get("VIGIL_CONFIG") or _config_path
    loaded: dict = {}
    if os.path.exists(target):
        with open(target, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
    elif path is not None:
        raise FileNotFoundError(f"Config file not found: {target}")

    config = _deep_merge(DEFAULT_CONFIG, loaded)

    api_url = os.environ.get("VIGIL_API_URL")
    if api_url:
        config["api"]["base_url"] = api_url

    if overrides:
        config = _deep_merge(config, overrides)
    return config


def merge_config(config: Optional[dict] = None) -> dict:
    """Complete a partial config dict with DEFAULT_CONFIG."""
    return _deep_merge(DEFAULT_CONFIG, config or {})


def section(config: Optional[dict], name: str) -> dict:
    """Return one config section, falling back to the defaults."""
    if config is None:
        return copy.deepcopy(DEFAULT_CONFIG[name])
    return _deep_merge(DEFAULT_CONFIG.get(name, {}), config.get(name, {}))


def setup_logger(name: str, level: Any = logging.INFO) -> logging.Logger:
    """Create a configured logger for Vigil modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(level)
    return logger
