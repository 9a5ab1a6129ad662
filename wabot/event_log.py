"""Structured event log -- JSONL append-only for operational analytics."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class EventLog:
    """Append-only JSONL record of what the runtime did.

    Three event types:
      plugin_execution -- command / listener run (duration, success)
      task_run         -- scheduled task firing (duration, success)
      connection       -- connection state transition (reason, retry count)
    """

    def __init__(self, path: Path, enabled: bool = True) -> None:
        self._path = path
        self._enabled = enabled
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def log_plugin_execution(
        self,
        filename: str,
        command: str,
        duration_ms: float,
        success: bool,
        error: str = "",
    ) -> None:
        data: dict[str, Any] = {
            "plugin": filename,
            "command": command,
            "duration_ms": round(duration_ms, 1),
            "success": success,
        }
        if error:
            data["error"] = error
        self._append("plugin_execution", data)

    def log_task_run(self, task_id: str, duration_ms: float, success: bool, error: str = "") -> None:
        data: dict[str, Any] = {
            "task_id": task_id,
            "duration_ms": round(duration_ms, 1),
            "success": success,
        }
        if error:
            data["error"] = error
        self._append("task_run", data)

    def log_connection(self, state: str, reason: str = "", retry_count: int = 0) -> None:
        self._append("connection", {
            "state": state,
            "reason": reason,
            "retry_count": retry_count,
        })

    def _append(self, event_type: str, data: dict[str, Any]) -> None:
        if not self._enabled:
            return
        record = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "type": event_type,
            **data,
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock:
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError:
            pass  # never crash the hot path for logging
