"""Session health statistics.

Counters and rolling timing data for one camera session: preview frames
pushed, capture dispatches (with duration percentiles), recoveries and
reclaim sweeps. The controller reads ``consecutive_dispatch_failures``
for its optional dispatch health check; everything else is reporting
for ``/api/status``.

Example:
    stats = SessionStats()
    stats.record_dispatch(duration_ms=84.0, success=True)
    stats.record_dispatch(duration_ms=0, success=False, error_type="OSError")
    summary = stats.get_summary()
    print(f"Dispatch success: {summary.dispatch_success_rate:.0%}")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

DEFAULT_STATS_WINDOW_SIZE: int = 500


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


@dataclass
class StatsSummary:
    """Point-in-time snapshot of session statistics."""

    preview_frames: int = 0
    preview_errors: int = 0
    dispatched: int = 0
    dispatch_failures: int = 0
    consecutive_dispatch_failures: int = 0
    dispatch_success_rate: float = 0.0
    avg_dispatch_ms: float = 0.0
    p95_dispatch_ms: float = 0.0
    recoveries: int = 0
    reclaim_failures: int = 0
    error_counts: dict[str, int] = field(default_factory=dict)
    last_capture_time: datetime | None = None
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "preview_frames": self.preview_frames,
            "preview_errors": self.preview_errors,
            "dispatched": self.dispatched,
            "dispatch_failures": self.dispatch_failures,
            "consecutive_dispatch_failures": self.consecutive_dispatch_failures,
            "dispatch_success_rate": self.dispatch_success_rate,
            "avg_dispatch_ms": self.avg_dispatch_ms,
            "p95_dispatch_ms": self.p95_dispatch_ms,
            "recoveries": self.recoveries,
            "reclaim_failures": self.reclaim_failures,
            "error_counts": self.error_counts.copy(),
            "last_capture_time": (
                self.last_capture_time.isoformat() if self.last_capture_time else None
            ),
            "uptime_seconds": self.uptime_seconds,
        }


@dataclass(slots=True)
class DispatchRecord:
    """Single capture dispatch outcome."""

    timestamp: datetime
    duration_ms: float
    success: bool
    error_type: str | None = None


class SessionStats:
    """Thread-safe statistics collector for the camera session.

    Written from the event loop (preview, dispatcher, controller) and from
    driver threads, read from HTTP handlers. Cumulative counters cover the
    whole process lifetime; duration statistics only cover the last
    ``window_size`` dispatches.
    """

    def __init__(self, window_size: int = DEFAULT_STATS_WINDOW_SIZE) -> None:
        """Create an empty collector.

        Args:
            window_size: Dispatch records kept for duration percentiles.
        """
        self.window_size = window_size
        self._lock = threading.Lock()
        self._records: deque[DispatchRecord] = deque(maxlen=window_size)
        self._reset_counters()

    def _reset_counters(self) -> None:
        self._preview_frames = 0
        self._preview_errors = 0
        self._dispatched = 0
        self._dispatch_failures = 0
        self._consecutive_dispatch_failures = 0
        self._recoveries = 0
        self._reclaim_failures = 0
        self._error_counts: dict[str, int] = {}
        self._last_capture_time: datetime | None = None
        self._start_time = time.monotonic()

    def _count_error(self, error_type: str | None) -> None:
        if error_type:
            self._error_counts[error_type] = self._error_counts.get(error_type, 0) + 1

    def record_preview_frame(self) -> None:
        with self._lock:
            self._preview_frames += 1

    def record_preview_error(self, error_type: str | None = None) -> None:
        with self._lock:
            self._preview_errors += 1
            self._count_error(error_type)

    def record_dispatch(
        self,
        duration_ms: float,
        success: bool,
        error_type: str | None = None,
    ) -> int:
        """Record the outcome of one capture dispatch.

        Args:
            duration_ms: Time from notification to emission (or failure).
            success: Whether ``capture-ready`` was emitted.
            error_type: Exception class name for failures.

        Returns:
            Consecutive dispatch failures after this record; 0 on success.
        """
        now = _utc_now()
        with self._lock:
            self._records.append(DispatchRecord(now, duration_ms, success, error_type))
            if success:
                self._dispatched += 1
                self._consecutive_dispatch_failures = 0
                self._last_capture_time = now
            else:
                self._dispatch_failures += 1
                self._consecutive_dispatch_failures += 1
                self._count_error(error_type)
            return self._consecutive_dispatch_failures

    def record_recovery(self, reason: str | None = None) -> None:
        with self._lock:
            self._recoveries += 1
            self._count_error(reason)

    def record_reclaim_failure(self, count: int = 1) -> None:
        with self._lock:
            self._reclaim_failures += count

    def reset_dispatch_failures(self) -> None:
        """Clear the consecutive failure streak after a new acquisition."""
        with self._lock:
            self._consecutive_dispatch_failures = 0

    @property
    def consecutive_dispatch_failures(self) -> int:
        with self._lock:
            return self._consecutive_dispatch_failures

    def get_summary(self) -> StatsSummary:
        """Compute a snapshot; sorting happens outside the lock."""
        with self._lock:
            dispatched = self._dispatched
            failures = self._dispatch_failures
            summary = StatsSummary(
                preview_frames=self._preview_frames,
                preview_errors=self._preview_errors,
                dispatched=dispatched,
                dispatch_failures=failures,
                consecutive_dispatch_failures=self._consecutive_dispatch_failures,
                recoveries=self._recoveries,
                reclaim_failures=self._reclaim_failures,
                error_counts=self._error_counts.copy(),
                last_capture_time=self._last_capture_time,
                uptime_seconds=time.monotonic() - self._start_time,
            )
            durations = [r.duration_ms for r in self._records if r.success]

        total = dispatched + failures
        summary.dispatch_success_rate = dispatched / total if total else 0.0
        if durations:
            summary.avg_dispatch_ms = sum(durations) / len(durations)
            summary.p95_dispatch_ms = _percentile(sorted(durations), 95)
        return summary

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._reset_counters()

    def to_dict(self) -> dict[str, Any]:
        return self.get_summary().to_dict()


def _percentile(sorted_data: list[float], p: float) -> float:
    """Linear-interpolated percentile of ascending ``sorted_data``.

    Args:
        sorted_data: Values sorted ascending; empty returns 0.0.
        p: Percentile in [0, 100].

    Raises:
        ValueError: If p is outside [0, 100].

    Example:
        >>> _percentile([100.0, 150.0, 200.0], 95)
        195.0
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be between 0 and 100, got {p}")
    if not sorted_data:
        return 0.0

    k = (len(sorted_data) - 1) * (p / 100)
    lower = int(k)
    upper = min(lower + 1, len(sorted_data) - 1)
    if lower == upper:
        return sorted_data[lower]
    fraction = k - lower
    return sorted_data[lower] * (1 - fraction) + sorted_data[upper] * fraction
