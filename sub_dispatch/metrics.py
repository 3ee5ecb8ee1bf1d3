"""
Dispatch metrics and their Prometheus text exposition.

Every metric the dispatcher, stores and sinks report is declared up front in
``COUNTERS`` / ``GAUGES`` with its help text; recording an undeclared name is a
programming error and raises ``KeyError``.
"""

from __future__ import annotations

import time
from typing import Any

COUNTERS: dict[str, str] = {
    "subscriptions_total": "Subscriptions stored (including replacements).",
    "subscribe_rejected_total": "Subscribe calls rejected before anything was stored.",
    "unsubscribes_total": "Unsubscribe calls.",
    "triggers_total": "Events triggered, with or without subscribers.",
    "deliveries_total": "Results handed to the delivery sink.",
    "delivery_errors_total": "Delivered results that carried query errors.",
    "executor_faults_total": "Executor calls that raised instead of returning a result.",
    "webhook_failures_total": "Webhook deliveries dropped after retrying.",
}

GAUGES: dict[str, str] = {
    "subscriptions_active": "Subscriptions currently stored.",
    "topics_active": "Topic keys with at least one subscribed channel.",
}


class MetricsCollector:
    """Counters and gauges for one dispatcher, exported under ``namespace``."""

    def __init__(self, namespace: str = "dispatch") -> None:
        self._namespace = namespace
        self._counters: dict[str, int] = dict.fromkeys(COUNTERS, 0)
        self._gauges: dict[str, float] = dict.fromkeys(GAUGES, 0)
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1) -> None:
        if name not in COUNTERS:
            raise KeyError(f"Unknown counter: {name}")
        self._counters[name] += value

    def set_gauge(self, name: str, value: float) -> None:
        if name not in GAUGES:
            raise KeyError(f"Unknown gauge: {name}")
        self._gauges[name] = value

    def get(self, name: str) -> int | float:
        if name in self._counters:
            return self._counters[name]
        if name in self._gauges:
            return self._gauges[name]
        raise KeyError(f"Unknown metric: {name}")

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def to_prometheus(self) -> str:
        lines: list[str] = []

        def emit(name: str, kind: str, help_text: str, value: Any) -> None:
            full = f"{self._namespace}_{name}"
            lines.append(f"# HELP {full} {help_text}")
            lines.append(f"# TYPE {full} {kind}")
            lines.append(f"{full} {value}")

        for name in sorted(COUNTERS):
            emit(name, "counter", COUNTERS[name], self._counters[name])
        for name in sorted(GAUGES):
            emit(name, "gauge", GAUGES[name], self._gauges[name])
        emit("uptime_seconds", "gauge", "Seconds since the collector was created.",
             f"{self.uptime_seconds:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "uptime_seconds": self.uptime_seconds,
        }
