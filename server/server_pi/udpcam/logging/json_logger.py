"""
JSON structured logger with rotation support.

Writes one JSON object per line (JSONL format) to the error stream and,
when a log file is configured, to that file with rotation based on size.
Each log entry includes timestamp, level, component, event, context and message.
"""

import json
import os
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO


class JsonLogger:
    """
    Structured JSON logger with size-based rotation.

    Log entries follow the format:
    {
      "ts": "2026-10-03T12:34:56.789Z",
      "lvl": "info",
      "comp": "capture",
      "evt": "config_negotiated",
      "ctx": {"width": 800, "height": 600},
      "msg": "Using camera configuration 800x600-XRGB8888"
    }

    The capture thread and the event loop thread log concurrently, so
    writes are serialised.
    """

    LEVELS = ["debug", "info", "warning", "service", "error"]

    def __init__(self, config: Dict[str, Any], stream: Optional[TextIO] = None) -> None:
        """
        Initialize the JSON logger.

        Args:
            config: Configuration dictionary with logging settings.
            stream: Diagnostic stream, the process error stream by default.
        """
        self.log_file = config["logging"].get("file")
        self.level = config["logging"]["level"]
        self.max_bytes = config["logging"]["rotate_max_mb"] * 1024 * 1024
        self.backup_count = config["logging"]["rotate_backups"]
        self.stream = stream if stream is not None else sys.stderr
        self._lock = threading.Lock()

        self.file_handle: Optional[TextIO] = None
        if self.log_file:
            # Ensure log directory exists
            log_dir = os.path.dirname(self.log_file)
            if log_dir and not os.path.exists(log_dir):
                os.makedirs(log_dir, exist_ok=True)
            self._open_log_file()

    def _open_log_file(self) -> None:
        """Open the log file for appending."""
        self.file_handle = open(self.log_file, "a", encoding="utf-8")

    def _should_rotate(self) -> bool:
        """Check if log file exceeds size limit."""
        if not os.path.exists(self.log_file):
            return False
        return os.path.getsize(self.log_file) >= self.max_bytes

    def _rotate(self) -> None:
        """
        Rotate log files.

        Renames current log to .1, shifts existing backups, and removes oldest.
        """
        if self.file_handle:
            self.file_handle.close()

        # Remove oldest backup if it exists
        oldest = f"{self.log_file}.{self.backup_count}"
        if os.path.exists(oldest):
            os.remove(oldest)

        # Shift existing backups
        for i in range(self.backup_count - 1, 0, -1):
            src = f"{self.log_file}.{i}"
            dst = f"{self.log_file}.{i + 1}"
            if os.path.exists(src):
                os.rename(src, dst)

        # Rename current log to .1
        if os.path.exists(self.log_file):
            os.rename(self.log_file, f"{self.log_file}.1")

        self._open_log_file()

    def enabled(self, level: str) -> bool:
        return self.LEVELS.index(level) >= self.LEVELS.index(self.level)

    def log(self, level: str, component: str, event: str, context: Dict[str, Any], message: str) -> None:
        """
        Write a structured log entry.

        Args:
            level: Log level (debug, info, warning, service, error).
            component: Component name (e.g., capture, pump).
            event: Event name (e.g., config_negotiated, push_failed).
            context: Dictionary with additional context data.
            message: Human-readable message.
        """
        if not self.enabled(level):
            return

        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "lvl": level,
            "comp": component,
            "evt": event,
            "ctx": context,
            "msg": message
        }
        line = json.dumps(entry, default=str)

        with self._lock:
            if self.file_handle:
                if self._should_rotate():
                    self._rotate()
                self.file_handle.write(line + "\n")
                self.file_handle.flush()

            self.stream.write(line + "\n")
            self.stream.flush()

    def close(self) -> None:
        """Close the log file."""
        with self._lock:
            if self.file_handle:
                self.file_handle.close()
                self.file_handle = None
