"""Self-monitoring for the reporting pipeline."""

from errorferry.telemetry.monitor import PerformanceEntry, SelfMonitor

__all__ = ["PerformanceEntry", "SelfMonitor"]
