"""
Simple in-process metrics registry for relay observability snapshots.
"""

from __future__ import annotations

import threading


class MetricsRegistry:
    """Thread-safe counter/gauge registry for lightweight instrumentation."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, float] = {
            "turns_started": 0.0,
            "turns_completed": 0.0,
            "turns_cancelled": 0.0,
            "turns_failed": 0.0,
            "keys_acquired": 0.0,
            "history_write_failures": 0.0,
            "turn_duration_seconds": 0.0,
        }
        self._gauges: dict[str, float] = {"active_turns": 0.0}

    def increment(self, name: str, amount: float = 1.0) -> None:
        """Increment a counter by the given amount."""
        with self._lock:
            self._counters[name] = self._counters.get(name, 0.0) + amount

    def observe(self, name: str, value: float) -> None:
        """Record an observation (e.g., duration) for a counter."""
        self.increment(name, value)

    def adjust_gauge(self, name: str, delta: float) -> None:
        """Move a gauge up or down atomically."""
        with self._lock:
            self._gauges[name] = self._gauges.get(name, 0.0) + delta

    def snapshot(self) -> dict[str, dict[str, float]]:
        """Return a snapshot of current counters and gauges."""
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
            }


metrics = MetricsRegistry()
