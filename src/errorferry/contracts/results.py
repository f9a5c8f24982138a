"""Structured outcomes returned by pipeline stages.

Every stage reports what happened through one of these records instead of
raising. Only the send capability and the circuit breaker communicate by
exception, and the retry executor and orchestrator convert those back into
records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from errorferry.contracts.enums import (
    DeliveryStatus,
    HealthStatus,
    QuotaDenial,
    RateLimitDenial,
)


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of a structural payload or endpoint validation."""

    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class QuotaDecision:
    """Outcome of a quota check.

    Attributes:
        allowed: Whether the event may be sent
        reason: First violated ceiling, None when allowed
        detail: Human-readable explanation for logs
    """

    allowed: bool
    reason: QuotaDenial | None = None
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of a rate-limit / duplicate check.

    Attributes:
        allowed: Whether the event may be sent
        remaining: Sends left in the current window after this one
        reset_time: Epoch seconds when the oldest tracked send leaves the window
        reason: Why the event was refused, None when allowed
    """

    allowed: bool
    remaining: int
    reset_time: float
    reason: RateLimitDenial | None = None


@dataclass(frozen=True, slots=True)
class RetryOutcome:
    """Result of running an operation under the retry executor.

    Attributes:
        success: Whether any attempt succeeded
        result: Return value of the successful attempt
        error: Final exception when every attempt failed
        attempts: Total number of attempts made (first try included)
        total_time: Wall-clock seconds spent, backoff sleeps included
    """

    success: bool
    attempts: int
    total_time: float
    result: Any = None
    error: BaseException | None = None


@dataclass(frozen=True, slots=True)
class CompressionResult:
    """Outcome of a compression attempt.

    ``payload`` is always safe to send: the encoded compressed bytes when
    ``compressed`` is True, otherwise the original input unchanged.

    Attributes:
        payload: Bytes to transmit
        compressed: Whether compression was applied
        original_size: Input size in bytes
        compressed_size: Size of ``payload`` (equals original_size when
            not compressed)
        ratio: compressed_size / original_size (1.0 when not compressed)
        encoding: Encoding tag needed to decompress, None when uncompressed
        reason: Why compression was skipped, None when applied
    """

    payload: bytes
    compressed: bool
    original_size: int
    compressed_size: int
    ratio: float
    encoding: str | None = None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class ReportOutcome:
    """What one pipeline pass did with an event."""

    status: DeliveryStatus
    detail: str | None = None

    @property
    def accepted(self) -> bool:
        return self.status in (DeliveryStatus.SENT, DeliveryStatus.BATCHED)


@dataclass(frozen=True, slots=True)
class HealthReport:
    """Operator-facing health assessment produced by the self-monitor."""

    status: HealthStatus
    score: int
    issues: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    metrics: dict[str, Any] = field(default_factory=dict)
