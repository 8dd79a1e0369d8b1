"""
Sage - Health Monitor
======================
Process-level error counter and status snapshot.

The fallback chain records every exhaustion here; the snapshot combines
that counter with live gate and cache statistics so an operator (or the
``ask`` script's ``--health`` flag) can see at a glance whether the
serving path is degraded.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Any

from sage.src.utils.errors import error_message

# More recorded errors than this flips the status to "degraded".
DEGRADED_ERROR_THRESHOLD = 50


def format_duration(seconds: float) -> str:
    s = int(seconds)
    m, h, d = s // 60, s // 3600, s // 86400
    if d > 0:
        return f"{d}d {h % 24}h {m % 60}m"
    if h > 0:
        return f"{h}h {m % 60}m"
    if m > 0:
        return f"{m}m {s % 60}s"
    return f"{s}s"


class HealthMonitor:
    """Thread-safe error counter with a JSON-serialisable snapshot."""

    __slots__ = ("_lock", "_error_count", "_last_error", "_last_error_at", "_started_at", "_clock")

    def __init__(self, clock=time.monotonic) -> None:
        self._lock = threading.Lock()
        self._error_count = 0
        self._last_error: str | None = None
        self._last_error_at: datetime | None = None
        self._clock = clock
        self._started_at = clock()


    def record_error(self, error: object = None) -> None:
        with self._lock:
            self._error_count += 1
            self._last_error = error_message(error)
            self._last_error_at = datetime.now(timezone.utc)


    @property
    def error_count(self) -> int:
        return self._error_count


    @property
    def status(self) -> str:
        return "degraded" if self._error_count > DEGRADED_ERROR_THRESHOLD else "healthy"


    def snapshot(self, gate: Any = None, cache: Any = None) -> dict[str, Any]:
        """
        Return the current health view.

        ``gate`` and ``cache`` are optional collaborators exposing a
        ``stats`` property; they are included when provided.
        """
        uptime = self._clock() - self._started_at
        with self._lock:
            errors = {
                "total": self._error_count,
                "last_message": self._last_error,
                "last_at": self._last_error_at.isoformat() if self._last_error_at else None,
            }
        snapshot: dict[str, Any] = {
            "status": self.status,
            "uptime": {"seconds": round(uptime, 3), "human": format_duration(uptime)},
            "errors": errors,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if gate is not None:
            snapshot["gate"] = gate.stats
        if cache is not None:
            snapshot["cache"] = cache.stats
        return snapshot
