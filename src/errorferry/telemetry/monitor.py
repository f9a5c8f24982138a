"""SelfMonitor tracks the health of the reporting pipeline itself.

Counters (events reported, suppressed by category, retries, offline queue
depth, last event time) are persisted in the StateStore so a health check
run from the CLI or another process sees the same numbers. The latency
ring is in-process: it describes this process's recent sends.

Health scoring starts at 100 and subtracts per detected issue:

    suppression ratio > 50%        -20
    average latency > 5000 ms      -15
    offline backlog > 10 entries   -10
    memory > 50 MiB                -10
    no event for 24 h              -5

score >= 80 is healthy, >= 60 degraded, anything lower unhealthy.
"""

from __future__ import annotations

import resource
import sys
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from errorferry.contracts.enums import HealthStatus
from errorferry.contracts.results import HealthReport
from errorferry.core.clock import DEFAULT_CLOCK, Clock
from errorferry.core.config import MonitorSettings
from errorferry.core.store.protocols import MONITOR_METRICS_KEY, StateStore

logger = structlog.get_logger(__name__)

MAX_PERFORMANCE_ENTRIES = 100
AVERAGE_WINDOW = 20


def rss_bytes() -> int:
    """Peak resident set size of this process in bytes."""
    maxrss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports kilobytes, macOS bytes
    return int(maxrss) if sys.platform == "darwin" else int(maxrss) * 1024


@dataclass(frozen=True, slots=True)
class PerformanceEntry:
    operation: str
    duration_ms: float
    timestamp: float
    success: bool


def _initial_metrics() -> dict[str, Any]:
    return {
        "events_reported": 0,
        "events_sent": 0,
        "events_failed": 0,
        "suppressed": {},
        "retry_attempts": 0,
        "offline_queue_size": 0,
        "last_event_time": None,
    }


class SelfMonitor:
    """Accumulates pipeline metrics and turns them into a HealthReport.

    Example:
        monitor = SelfMonitor(settings.monitor, store)
        monitor.track_event()
        monitor.track_performance("send", 120.0, success=True)
        report = monitor.assess_health()
    """

    def __init__(
        self,
        settings: MonitorSettings,
        store: StateStore,
        *,
        clock: Clock | None = None,
        memory_probe: Callable[[], int] = rss_bytes,
    ) -> None:
        self._settings = settings
        self._store = store
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._memory_probe = memory_probe
        self._started_at = self._clock.time()
        self._lock = threading.Lock()
        self._performance: deque[PerformanceEntry] = deque(maxlen=MAX_PERFORMANCE_ENTRIES)

    def _bump(self, **changes: Any) -> None:
        def mutate(raw: dict[str, Any] | None) -> dict[str, Any]:
            metrics = {**_initial_metrics(), **(raw or {})}
            for name, value in changes.items():
                if name == "suppressed":
                    suppressed = dict(metrics["suppressed"])
                    suppressed[value] = suppressed.get(value, 0) + 1
                    metrics["suppressed"] = suppressed
                elif name in ("offline_queue_size", "last_event_time"):
                    metrics[name] = value
                else:
                    metrics[name] += value
            return metrics

        self._store.update(MONITOR_METRICS_KEY, mutate)

    # === Tracking ===

    def track_event(self) -> None:
        """Count one event entering the pipeline."""
        self._bump(events_reported=1, last_event_time=self._clock.time())

    def track_sent(self, count: int = 1) -> None:
        self._bump(events_sent=count)

    def track_failure(self) -> None:
        self._bump(events_failed=1)

    def track_suppressed(self, category: str) -> None:
        """Count an event the pipeline refused (validation, quota, rate, duplicate...)."""
        self._bump(suppressed=category)

    def track_retry_attempts(self, count: int) -> None:
        if count > 0:
            self._bump(retry_attempts=count)

    def update_offline_queue_size(self, size: int) -> None:
        self._bump(offline_queue_size=size)

    def track_performance(self, operation: str, duration_ms: float, success: bool = True) -> None:
        entry = PerformanceEntry(
            operation=operation,
            duration_ms=duration_ms,
            timestamp=self._clock.time(),
            success=success,
        )
        with self._lock:
            self._performance.append(entry)

    # === Reading ===

    def average_latency_ms(self) -> float:
        with self._lock:
            recent = list(self._performance)[-AVERAGE_WINDOW:]
        if not recent:
            return 0.0
        return sum(e.duration_ms for e in recent) / len(recent)

    def metrics(self) -> dict[str, Any]:
        metrics = {**_initial_metrics(), **(self._store.get(MONITOR_METRICS_KEY) or {})}
        metrics["suppressed_total"] = sum(metrics["suppressed"].values())
        metrics["average_response_time_ms"] = self.average_latency_ms()
        metrics["memory_usage_bytes"] = self._memory_probe()
        metrics["uptime_seconds"] = self._clock.time() - self._started_at
        return metrics

    def performance_stats(self) -> dict[str, Any]:
        with self._lock:
            entries = list(self._performance)
        if not entries:
            return {"total_operations": 0, "success_rate": 0.0, "average_duration_ms": 0.0, "operations": {}}

        operations: dict[str, dict[str, Any]] = {}
        for entry in entries:
            op = operations.setdefault(entry.operation, {"count": 0, "successes": 0, "total_duration_ms": 0.0})
            op["count"] += 1
            op["total_duration_ms"] += entry.duration_ms
            if entry.success:
                op["successes"] += 1
        for op in operations.values():
            op["success_rate"] = op["successes"] / op["count"] * 100
            op["average_duration_ms"] = op["total_duration_ms"] / op["count"]

        successes = sum(1 for e in entries if e.success)
        return {
            "total_operations": len(entries),
            "success_rate": successes / len(entries) * 100,
            "average_duration_ms": sum(e.duration_ms for e in entries) / len(entries),
            "operations": operations,
        }

    def assess_health(self) -> HealthReport:
        s = self._settings
        metrics = self.metrics()
        issues: list[str] = []
        recommendations: list[str] = []
        score = 100

        reported = metrics["events_reported"]
        suppression_ratio = metrics["suppressed_total"] / reported if reported else 0.0
        if suppression_ratio > 0.5:
            issues.append("High error suppression rate")
            recommendations.append("Review quota, rate limit and duplicate window configuration")
            score -= 20

        if metrics["average_response_time_ms"] > s.high_latency_ms:
            issues.append("Slow average response time")
            recommendations.append("Check network connectivity and endpoint performance")
            score -= 15

        if metrics["offline_queue_size"] > s.large_backlog:
            issues.append("Large offline queue")
            recommendations.append("Check network connectivity and circuit breaker state")
            score -= 10

        if metrics["memory_usage_bytes"] > s.high_memory_bytes:
            issues.append("High memory usage")
            recommendations.append("Consider reducing breadcrumb retention or queue sizes")
            score -= 10

        last_event = metrics["last_event_time"]
        if last_event is not None and self._clock.time() - last_event > s.silence_seconds:
            issues.append("No errors reported in 24 hours")
            recommendations.append("Verify error reporting is working correctly")
            score -= 5

        if score >= 80:
            status = HealthStatus.HEALTHY
        elif score >= 60:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.UNHEALTHY

        metrics["suppression_ratio"] = suppression_ratio
        return HealthReport(
            status=status,
            score=max(0, score),
            issues=tuple(issues),
            recommendations=tuple(recommendations),
            metrics=metrics,
        )

    def perform_health_check(self) -> HealthReport:
        """Scheduled entry point: prune stale latency samples and log the assessment."""
        cutoff = self._clock.time() - 3600
        with self._lock:
            self._performance = deque(
                (e for e in self._performance if e.timestamp > cutoff), maxlen=MAX_PERFORMANCE_ENTRIES
            )
        report = self.assess_health()
        log = logger.info if report.status == HealthStatus.HEALTHY else logger.warning
        log("Reporter health check", status=report.status, score=report.score, issues=list(report.issues))
        return report

    def reset(self) -> None:
        self._store.set(MONITOR_METRICS_KEY, _initial_metrics())
        with self._lock:
            self._performance.clear()
        self._started_at = self._clock.time()
