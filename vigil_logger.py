"""
Vigil Liveness Engine: Structured Audit Logger
==============================================
Records every liveness decision (state changes, per-frame scores,
verdicts, finalize attempts) as JSONL for post-mortem review of
spoofing attempts.

Key Features:
  - JSONL (Newline Delimited JSON) format
  - Thread-safe appends
  - Levels: AUDIT, WARN, ERROR, SYSTEM
  - NumPy-aware serialization
"""

import json
import logging
import os
import sys
import threading
import time
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np


_log = logging.getLogger("VigilAudit")


class VigilJSONEncoder(json.JSONEncoder):
    """Handles NumPy and Enum types for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


class VigilLogger:
    """Append-only audit log shared by every session in the process."""

    def __init__(self, log_dir: str = "logs", filename: str = "vigil_audit.jsonl"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, filename)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()

        self.log({
            "event": "system_startup",
            "python_version": sys.version,
            "platform": sys.platform,
        }, level="SYSTEM")

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append log entry."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data,
        }
        with self._lock:
            self._write(entry)

    def _write(self, entry: Dict[str, Any]):
        # Caller holds self._lock.
        if self._file.closed:
            return
        self._file.write(json.dumps(entry, cls=VigilJSONEncoder) + "\n")
        self._file.flush()

    def log_frame(self, frame_data: Dict[str, Any]):
        self.log(frame_data, level="AUDIT", event="frame_processed")

    def warn(self, message: str, context: Optional[Dict] = None):
        """Log structured warning."""
        _log.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="system_warning")

    def error(self, message: str, exception: Optional[Exception] = None):
        """Log structured error with exception details."""
        _log.error(message)
        err_details = str(exception) if exception else None
        self.log({"message": message, "exception": err_details}, level="ERROR", event="system_error")

    def close(self):
        with self._lock:
            if self._file.closed:
                return
            self._write({
                "timestamp": time.time(),
                "level": "SYSTEM",
                "event": "system_shutdown",
                "data": {"message": "Logger shutting down"},
            })
            self._file.close()


_logger: Optional[VigilLogger] = None


def get_logger(log_dir: str = "logs") -> VigilLogger:
    global _logger
    if _logger is None or _logger._file.closed:
        _logger = VigilLogger(log_dir)
    return _logger
