"""Core infrastructure: Configuration, Clock, State stores, Scheduling, Security, Logging."""

from errorferry.core.breadcrumbs import BreadcrumbLedger
from errorferry.core.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from errorferry.core.config import (
    BatchSettings,
    CaptureSettings,
    CircuitBreakerSettings,
    CompressionSettings,
    MonitorSettings,
    OfflineSettings,
    QuotaSettings,
    RateLimitSettings,
    ReporterSettings,
    RetrySettings,
    SecuritySettings,
    StoreSettings,
    load_settings,
    resolve_config,
)
from errorferry.core.logging import configure_logging, get_logger
from errorferry.core.scheduler import ManualScheduler, Scheduler, ThreadScheduler
from errorferry.core.security import SecurityValidator
from errorferry.core.store import DatabaseStateStore, MemoryStateStore, StateStore, create_store

__all__ = [
    "DEFAULT_CLOCK",
    "BatchSettings",
    "BreadcrumbLedger",
    "CaptureSettings",
    "CircuitBreakerSettings",
    "Clock",
    "CompressionSettings",
    "DatabaseStateStore",
    "ManualScheduler",
    "MemoryStateStore",
    "MockClock",
    "MonitorSettings",
    "OfflineSettings",
    "QuotaSettings",
    "RateLimitSettings",
    "ReporterSettings",
    "RetrySettings",
    "Scheduler",
    "SecurityValidator",
    "StateStore",
    "StoreSettings",
    "SystemClock",
    "ThreadScheduler",
    "configure_logging",
    "create_store",
    "get_logger",
    "load_settings",
    "resolve_config",
]
