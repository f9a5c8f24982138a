"""Delivery engine: every stage between a captured event and the endpoint.

This module provides:
- Orchestrator: The pipeline front door (report/submit)
- QuotaTracker: Daily/monthly/burst/payload ceilings
- RateLimiter: Per-minute cap and fingerprint deduplication
- RetryExecutor: Retry logic with tenacity
- CircuitBreaker: Failure-rate breaker around the send capability
- Compressor: Conditional gzip of outbound payloads
- Batcher: Size/age-triggered batching
- OfflineQueue: Durable fallback with periodic replay

Example:
    from errorferry.core.config import load_settings
    from errorferry.engine import Orchestrator

    orchestrator = Orchestrator.from_settings(load_settings(Path("errorferry.yaml")))
    orchestrator.start()
    orchestrator.report_message("Payment webhook rejected", level="warning")
"""

from errorferry.engine.batching import Batcher, split
from errorferry.engine.circuit_breaker import CircuitBreaker
from errorferry.engine.compression import Compressor, estimate_ratio
from errorferry.engine.offline import OfflineQueue, ReplayResult
from errorferry.engine.orchestrator import Orchestrator, failure_status
from errorferry.engine.quota import QuotaTracker
from errorferry.engine.rate_limit import RateLimiter, fingerprint
from errorferry.engine.retry import RetryExecutor, RetryPolicy, is_retryable

__all__ = [
    "Batcher",
    "CircuitBreaker",
    "Compressor",
    "OfflineQueue",
    "Orchestrator",
    "QuotaTracker",
    "RateLimiter",
    "ReplayResult",
    "RetryExecutor",
    "RetryPolicy",
    "estimate_ratio",
    "failure_status",
    "fingerprint",
    "is_retryable",
    "split",
]
