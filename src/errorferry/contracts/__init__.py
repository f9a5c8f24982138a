"""Shared contracts for cross-component data types.

Dataclasses, enums and exceptions that cross component boundaries live here.
This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes are NOT re-exported here - import them from
errorferry.core.config.

Import patterns:
    from errorferry.contracts import Event, DeliveryStatus, TransportError
    from errorferry.core.config import ReporterSettings
"""

from errorferry.contracts.enums import (
    CircuitState,
    DeliveryStatus,
    HealthStatus,
    QuotaDenial,
    RateLimitDenial,
)
from errorferry.contracts.errors import (
    CircuitOpenError,
    DeliveryError,
    EndpointPolicyError,
    PayloadValidationError,
    StoreError,
    TransportError,
)
from errorferry.contracts.events import MESSAGE_CLASSIFICATION, Breadcrumb, Event
from errorferry.contracts.results import (
    CompressionResult,
    HealthReport,
    QuotaDecision,
    RateLimitDecision,
    ReportOutcome,
    RetryOutcome,
    ValidationResult,
)
from errorferry.contracts.state import (
    CircuitBreakerState,
    OfflineQueueEntry,
    QuotaState,
    RateLimiterState,
)

__all__ = [
    "MESSAGE_CLASSIFICATION",
    "Breadcrumb",
    "CircuitBreakerState",
    "CircuitOpenError",
    "CircuitState",
    "CompressionResult",
    "DeliveryError",
    "DeliveryStatus",
    "EndpointPolicyError",
    "Event",
    "HealthReport",
    "HealthStatus",
    "OfflineQueueEntry",
    "PayloadValidationError",
    "QuotaDecision",
    "QuotaDenial",
    "QuotaState",
    "RateLimitDecision",
    "RateLimitDenial",
    "RateLimiterState",
    "ReportOutcome",
    "RetryOutcome",
    "StoreError",
    "TransportError",
    "ValidationResult",
]
