"""Status codes, states and denial reasons used across component boundaries.

Values are persisted (circuit state) or surfaced to operators (health status,
delivery status), so they are StrEnums with stable lowercase values.
"""

from enum import StrEnum


class CircuitState(StrEnum):
    """State of the delivery circuit breaker.

    Persisted in the state store (circuit_breaker.state).
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class QuotaDenial(StrEnum):
    """Machine-readable reason a quota check refused an event.

    Checks run in declaration order and short-circuit on the first violation.
    """

    PAYLOAD_SIZE = "payload_size"
    BURST_LIMIT = "burst_limit"
    DAILY_LIMIT = "daily_limit"
    MONTHLY_LIMIT = "monthly_limit"


class RateLimitDenial(StrEnum):
    """Reason the rate limiter refused an event."""

    RATE_LIMITED = "rate_limited"
    DUPLICATE = "duplicate"


class DeliveryStatus(StrEnum):
    """Outcome of one pass of an event through the reporting pipeline.

    Accepted statuses (the event was sent or will be sent) are SENT and
    BATCHED. Everything else is a local failure that the caller only sees as
    ``report() -> False``.
    """

    SENT = "sent"
    BATCHED = "batched"
    VALIDATION_FAILED = "validation_failed"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    DUPLICATE = "duplicate"
    TRANSPORT_RETRYABLE = "transport_retryable"
    TRANSPORT_TERMINAL = "transport_terminal"
    CIRCUIT_OPEN = "circuit_open"
    QUEUED_OFFLINE = "queued_offline"
    INTERNAL_ERROR = "internal_error"
    DISABLED = "disabled"


class HealthStatus(StrEnum):
    """Coarse health of the delivery pipeline as reported to operators."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
