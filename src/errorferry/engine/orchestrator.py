"""Orchestrator: runs one captured event through the delivery pipeline.

Pipeline, strictly ordered:

    sanitize -> validate -> quota -> rate limit / dedup -> compress
        -> batch (fire-and-forget)
        -> or send now: circuit breaker( retry executor( send ) )

Outcomes by stage:
- invalid event: dropped (VALIDATION_FAILED)
- quota denial: offline-enqueued (QUOTA_EXCEEDED)
- rate limit / duplicate: dropped, never queued
- send failure after retries, terminal 4xx, or open circuit:
  offline-enqueued for replay

With batching on, an admitted event reserves its quota share immediately
and gives it back if its batch fails to send.

``submit`` and ``report`` never raise. Every unexpected exception is caught
at this boundary, logged, and turned into INTERNAL_ERROR.

The orchestrator owns its components; hosts inject only the send
capability, the state store, the scheduler and (for tests) the clock.
"""

from __future__ import annotations

import dataclasses
import json
import time
from collections.abc import Callable, Sequence
from typing import Any

import structlog

from errorferry.contracts.enums import DeliveryStatus, RateLimitDenial
from errorferry.contracts.errors import CircuitOpenError, DeliveryError, EndpointPolicyError, TransportError
from errorferry.contracts.events import Event
from errorferry.contracts.results import HealthReport, ReportOutcome, RetryOutcome
from errorferry.core.breadcrumbs import BreadcrumbLedger
from errorferry.core.clock import DEFAULT_CLOCK, Clock
from errorferry.core.config import ReporterSettings
from errorferry.core.scheduler import ManualScheduler, Scheduler
from errorferry.core.security import SecurityValidator
from errorferry.core.store import MemoryStateStore, StateStore, create_store
from errorferry.engine.batching import Batcher
from errorferry.engine.circuit_breaker import CircuitBreaker
from errorferry.engine.compression import Compressor
from errorferry.engine.offline import OfflineQueue, ReplayResult
from errorferry.engine.quota import QuotaTracker
from errorferry.engine.rate_limit import RateLimiter
from errorferry.engine.retry import RetryExecutor, RetryPolicy
from errorferry.telemetry.monitor import SelfMonitor

logger = structlog.get_logger(__name__)

SendCapability = Callable[[dict[str, Any]], object]

# Scheduled task names
TASK_BATCH_FLUSH = "batch_flush"
TASK_OFFLINE_REPLAY = "offline_replay"
TASK_OFFLINE_CLEANUP = "offline_cleanup"
TASK_RATE_LIMIT_CLEANUP = "rate_limit_cleanup"
TASK_CIRCUIT_CLEANUP = "circuit_breaker_cleanup"
TASK_HEALTH_CHECK = "health_check"

# Window cleanup cadence for the rate limiter and circuit breaker
_WINDOW_CLEANUP_INTERVAL = 60.0

_RATE_DENIAL_STATUS = {
    RateLimitDenial.RATE_LIMITED: DeliveryStatus.RATE_LIMITED,
    RateLimitDenial.DUPLICATE: DeliveryStatus.DUPLICATE,
}


def _json_size(payload: dict[str, Any]) -> int:
    return len(json.dumps(payload, default=str).encode("utf-8"))


def _event_size(body: dict[str, Any]) -> int:
    """Size the quota charged for body: the uncompressed event, even inside an envelope."""
    if body.get("compressed") is True and "original_size" in body:
        return int(body["original_size"])
    return _json_size(body)


def failure_status(error: BaseException) -> DeliveryStatus:
    """Map the final delivery error to the outcome reported to the caller."""
    if isinstance(error, CircuitOpenError):
        return DeliveryStatus.CIRCUIT_OPEN
    if isinstance(error, TransportError) and not error.retryable:
        return DeliveryStatus.TRANSPORT_TERMINAL
    return DeliveryStatus.TRANSPORT_RETRYABLE


class Orchestrator:
    """Dependency-injected front door of the reporting pipeline.

    Example:
        orchestrator = Orchestrator.from_settings(load_settings(Path("errorferry.yaml")))
        orchestrator.start()
        try:
            risky()
        except Exception as exc:
            orchestrator.report_exception(exc)
        ...
        orchestrator.shutdown()
    """

    def __init__(
        self,
        settings: ReporterSettings,
        *,
        send: SendCapability,
        store: StateStore | None = None,
        scheduler: Scheduler | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
        ledger: BreadcrumbLedger | None = None,
        closers: Sequence[Callable[[], None]] = (),
    ) -> None:
        """Wire every pipeline component around a send capability.

        An enabled reporter checks the endpoint against the endpoint policy
        first and refuses to start if it is rejected.

        Args:
            settings: Validated reporter settings
            send: Callable that delivers one JSON body and raises on failure
                (TransportError for endpoint failures)
            store: Persistent state store (default: in-process memory store)
            scheduler: Periodic task runner used by start() (default:
                ManualScheduler, which runs nothing on its own)
            clock: Time source (default: system clock)
            sleep: Backoff sleep used by the retry executor
            ledger: Breadcrumb ledger shared with the capture layer
            closers: Release functions for resources this orchestrator owns
                (transport, store), called once by shutdown()

        Raises:
            EndpointPolicyError: The reporter is enabled and the endpoint
                fails the endpoint policy.
        """
        self._settings = settings
        self._security = SecurityValidator(settings.security)
        if settings.enabled:
            endpoint = self._security.validate_endpoint(settings.endpoint_url, settings.environment)
            if not endpoint.valid:
                logger.error("Endpoint rejected by policy", errors=list(endpoint.errors))
                raise EndpointPolicyError(endpoint.errors)

        self._send = send
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._store = store if store is not None else MemoryStateStore(clock=self._clock)
        self._scheduler = scheduler if scheduler is not None else ManualScheduler()
        self._ledger = ledger if ledger is not None else BreadcrumbLedger(settings.max_breadcrumbs, clock=self._clock)
        self._closers = tuple(closers)

        self._quota = QuotaTracker(settings.quota, self._store, clock=self._clock)
        self._limiter = RateLimiter(settings.rate_limit, self._store, clock=self._clock)
        self._compressor = Compressor(settings.compression)
        self._retry = RetryExecutor(RetryPolicy.from_settings(settings.retry), sleep=sleep, clock=self._clock)
        self._breaker = CircuitBreaker(settings.circuit_breaker, self._store, clock=self._clock)
        self._monitor = SelfMonitor(settings.monitor, self._store, clock=self._clock)
        self._offline = OfflineQueue(settings.offline, self._store, send=self._replay_send, clock=self._clock)
        self._batcher = Batcher(
            settings.batch,
            self._store,
            send=self._send_guarded,
            on_failure=self._on_batch_failure,
            on_success=self._on_batch_success,
            clock=self._clock,
        )
        self._started = False
        self._shut_down = False
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: ReporterSettings,
        *,
        scheduler: Scheduler | None = None,
        clock: Clock | None = None,
    ) -> Orchestrator:
        """Build an orchestrator with the default httpx transport and configured store.

        The orchestrator owns both; shutdown() closes the transport and
        disposes a database store.

        Raises:
            EndpointPolicyError: The endpoint fails the endpoint policy.
        """
        from errorferry.transport import HttpTransport

        transport = HttpTransport(settings.endpoint_url, timeout=settings.retry.attempt_timeout_seconds)
        store = create_store(settings.store, clock=clock)
        closers: list[Callable[[], None]] = [transport.close]
        store_close = getattr(store, "close", None)
        if callable(store_close):
            closers.append(store_close)
        try:
            return cls(settings, send=transport.send, store=store, scheduler=scheduler, clock=clock, closers=closers)
        except EndpointPolicyError:
            for close in closers:
                close()
            raise

    # === Component access (operators and tests) ===

    @property
    def settings(self) -> ReporterSettings:
        return self._settings

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def closed(self) -> bool:
        """True once shutdown() has released the owned transport and store."""
        return self._closed

    @property
    def breadcrumbs(self) -> BreadcrumbLedger:
        return self._ledger

    @property
    def security(self) -> SecurityValidator:
        return self._security

    @property
    def quota(self) -> QuotaTracker:
        return self._quota

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def batcher(self) -> Batcher:
        return self._batcher

    @property
    def offline_queue(self) -> OfflineQueue:
        return self._offline

    @property
    def monitor(self) -> SelfMonitor:
        return self._monitor

    # === Reporting ===

    def report(self, event: Event) -> bool:
        """Run event through the pipeline. True when it was sent or batched."""
        return self.submit(event).accepted

    def submit(self, event: Event) -> ReportOutcome:
        """Run event through the pipeline and describe what happened. Never raises."""
        if not self._settings.enabled:
            return ReportOutcome(DeliveryStatus.DISABLED)
        if self._closed:
            # The store and transport are gone; there is nowhere to queue it
            return ReportOutcome(DeliveryStatus.DISABLED, detail="reporter closed")
        try:
            return self._process(event)
        except Exception as e:
            logger.error(
                "Internal error while reporting event",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return ReportOutcome(DeliveryStatus.INTERNAL_ERROR, detail=f"{type(e).__name__}: {e}")

    def report_exception(
        self,
        exc: BaseException,
        *,
        http_status: int | None = None,
        context: dict[str, Any] | None = None,
        environment: str | None = None,
    ) -> ReportOutcome:
        """Capture exc with the current breadcrumb trail and submit it."""
        try:
            event = Event.from_exception(
                exc,
                project=self._settings.project,
                environment=environment or self._settings.environment,
                http_status=http_status,
                breadcrumbs=self._ledger.snapshot(),
                context=context,
            )
        except Exception as e:
            logger.error("Failed to capture exception", error=str(e), error_type=type(e).__name__)
            return ReportOutcome(DeliveryStatus.INTERNAL_ERROR, detail=str(e))
        return self.submit(event)

    def report_message(
        self,
        message: str,
        *,
        level: str = "error",
        http_status: int | None = None,
        context: dict[str, Any] | None = None,
        environment: str | None = None,
    ) -> ReportOutcome:
        """Capture a message-style event with the current breadcrumb trail and submit it."""
        try:
            event = Event.from_message(
                message,
                project=self._settings.project,
                environment=environment or self._settings.environment,
                level=level,
                http_status=http_status,
                breadcrumbs=self._ledger.snapshot(),
                context=context,
                skip_frames=1,
            )
        except Exception as e:
            logger.error("Failed to capture message", error=str(e), error_type=type(e).__name__)
            return ReportOutcome(DeliveryStatus.INTERNAL_ERROR, detail=str(e))
        return self.submit(event)

    def add_breadcrumb(
        self,
        message: str,
        *,
        category: str = "custom",
        level: str = "info",
        data: dict[str, Any] | None = None,
    ) -> None:
        self._ledger.add(message, category=category, level=level, data=data)

    def clear_breadcrumbs(self) -> None:
        self._ledger.clear()

    # === Pipeline ===

    def _apply_capture_toggles(self, event: Event) -> Event:
        capture = self._settings.capture
        changes: dict[str, Any] = {}
        if not capture.request and event.request is not None:
            changes["request"] = None
        if not capture.session and event.session is not None:
            changes["session"] = None
        if not capture.server and event.server is not None:
            changes["server"] = None
        if not changes:
            return event
        return dataclasses.replace(event, **changes)

    def _process(self, event: Event) -> ReportOutcome:
        self._monitor.track_event()

        event = self._security.sanitize(self._apply_capture_toggles(event))
        validation = self._security.validate(event)
        if not validation.valid:
            self._monitor.track_suppressed("validation")
            logger.warning("Event failed validation", errors=list(validation.errors))
            return ReportOutcome(DeliveryStatus.VALIDATION_FAILED, detail="; ".join(validation.errors))
        if validation.warnings:
            logger.debug("Event validation warnings", warnings=list(validation.warnings))

        payload = event.to_payload()

        if self._shut_down:
            # Late reports during host shutdown go straight to the queue
            return self._queue_offline(payload, DeliveryStatus.QUEUED_OFFLINE, "reporter shut down")

        size = _json_size(payload)
        if self._settings.batch.enabled:
            # Buffered events hold their quota share from admission on
            quota = self._quota.try_acquire(size)
        else:
            quota = self._quota.can_send(size)
        if not quota.allowed:
            assert quota.reason is not None
            self._monitor.track_suppressed(f"quota:{quota.reason.value}")
            return self._queue_offline(payload, DeliveryStatus.QUOTA_EXCEEDED, quota.detail)

        if self._settings.batch.enabled:
            return self._admit_to_batch(event, payload, size)

        decision = self._limiter.acquire(event)
        if not decision.allowed:
            return self._rate_denied(decision.reason)

        return self._deliver(self._body_for(payload), payload)

    def _rate_denied(self, reason: RateLimitDenial | None) -> ReportOutcome:
        assert reason is not None
        self._monitor.track_suppressed(reason.value)
        return ReportOutcome(_RATE_DENIAL_STATUS[reason], detail=reason.value)

    def _admit_to_batch(self, event: Event, payload: dict[str, Any], size: int) -> ReportOutcome:
        """Buffer an event whose quota share is already reserved."""
        try:
            decision = self._limiter.acquire(event)
            body = self._body_for(payload) if decision.allowed else None
        except Exception:
            self._quota.release(size)
            raise
        if body is None:
            self._quota.release(size)
            return self._rate_denied(decision.reason)
        batch_id = self._batcher.add(body)
        return ReportOutcome(DeliveryStatus.BATCHED, detail=batch_id)

    def _body_for(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Wrap payload in a compressed envelope when compression pays off."""
        if payload.get("compressed") is True:
            return payload
        result = self._compressor.compress_json(payload)
        return self._compressor.envelope(result, payload)

    def _send_guarded(self, body: dict[str, Any]) -> RetryOutcome:
        """Send body through the circuit breaker and retry executor.

        The breaker sees one outcome per delivery, after retries.

        Raises:
            CircuitOpenError: The circuit is open; send was not attempted.
            Exception: The final send error once retries are exhausted.
        """
        outcome: RetryOutcome | None = None

        def attempt() -> RetryOutcome:
            nonlocal outcome
            outcome = self._retry.execute_with_retry(lambda: self._send(body))
            if not outcome.success:
                assert outcome.error is not None
                raise outcome.error
            return outcome

        started = self._clock.monotonic()
        try:
            result = self._breaker.execute(attempt)
        except CircuitOpenError:
            raise
        except Exception:
            self._track_delivery(outcome, started, success=False)
            raise
        self._track_delivery(outcome, started, success=True)
        return result

    def _track_delivery(self, outcome: RetryOutcome | None, started: float, *, success: bool) -> None:
        duration_ms = (self._clock.monotonic() - started) * 1000
        self._monitor.track_performance("send", duration_ms, success=success)
        if outcome is not None:
            self._monitor.track_retry_attempts(outcome.attempts - 1)

    def _deliver(self, body: dict[str, Any], payload: dict[str, Any]) -> ReportOutcome:
        try:
            self._send_guarded(body)
        except Exception as e:
            status = failure_status(e)
            self._monitor.track_failure()
            logger.warning(
                "Event delivery failed",
                status=status,
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._queue_offline(body, status, str(e))

        self._quota.record_usage(_json_size(payload))
        self._monitor.track_sent()
        return ReportOutcome(DeliveryStatus.SENT)

    def _queue_offline(self, body: dict[str, Any], status: DeliveryStatus, detail: str | None) -> ReportOutcome:
        if not self._settings.offline.enabled:
            return ReportOutcome(status, detail=detail)
        self._offline.enqueue(body)
        self._monitor.update_offline_queue_size(len(self._offline))
        return ReportOutcome(status, detail=detail)

    # === Batch callbacks ===

    def _on_batch_success(self, items: list[dict[str, Any]]) -> None:
        # Usage was reserved when each item was admitted
        self._monitor.track_sent(len(items))

    def _on_batch_failure(self, items: list[dict[str, Any]], error: BaseException) -> None:
        self._monitor.track_failure()
        # Undelivered items give back their share; replay charges them again
        for item in items:
            self._quota.release(_event_size(item))
        if not self._settings.offline.enabled:
            return
        for item in items:
            self._offline.enqueue(item)
        self._monitor.update_offline_queue_size(len(self._offline))

    # === Offline replay ===

    def _replay_send(self, payload: dict[str, Any]) -> None:
        """Send one queued entry. Replay is itself the retry, so no retry executor here."""
        size = _event_size(payload)
        quota = self._quota.can_send(size)
        if not quota.allowed:
            raise DeliveryError(quota.detail or "quota exceeded")
        started = self._clock.monotonic()
        try:
            self._breaker.execute(lambda: self._send(self._body_for(payload)))
        except CircuitOpenError:
            raise
        except Exception:
            self._monitor.track_performance("replay", (self._clock.monotonic() - started) * 1000, success=False)
            raise
        self._monitor.track_performance("replay", (self._clock.monotonic() - started) * 1000, success=True)
        self._quota.record_usage(size)
        self._monitor.track_sent()

    def replay_offline(self) -> ReplayResult:
        """Resend queued entries once, unless the circuit is refusing calls."""
        if not self._breaker.can_execute():
            logger.debug("Offline replay skipped - circuit breaker not accepting calls")
            return ReplayResult(skipped=True)
        result = self._offline.replay()
        self._monitor.update_offline_queue_size(len(self._offline))
        return result

    def cleanup_offline(self) -> int:
        removed = self._offline.cleanup()
        self._monitor.update_offline_queue_size(len(self._offline))
        return removed

    # === Lifecycle ===

    def start(self) -> None:
        """Register the periodic background tasks with the scheduler."""
        if self._started:
            return
        s = self._settings
        if s.batch.enabled:
            self._scheduler.schedule(TASK_BATCH_FLUSH, s.batch.max_wait_seconds, self._batcher.flush_if_due)
        if s.offline.enabled:
            self._scheduler.schedule(TASK_OFFLINE_REPLAY, s.offline.replay_interval_seconds, self.replay_offline)
            self._scheduler.schedule(TASK_OFFLINE_CLEANUP, s.offline.cleanup_interval_seconds, self.cleanup_offline)
        self._scheduler.schedule(TASK_RATE_LIMIT_CLEANUP, _WINDOW_CLEANUP_INTERVAL, self._limiter.cleanup)
        self._scheduler.schedule(TASK_CIRCUIT_CLEANUP, _WINDOW_CLEANUP_INTERVAL, self._breaker.cleanup)
        self._scheduler.schedule(
            TASK_HEALTH_CHECK, s.monitor.health_check_interval_seconds, self._monitor.perform_health_check
        )
        self._started = True
        logger.info(
            "Reporter started",
            project=s.project,
            environment=s.environment,
            batching=s.batch.enabled,
            offline=s.offline.enabled,
        )

    def shutdown(self) -> None:
        """Stop background tasks, flush the batch buffer and release owned resources.

        A batch that fails to send on the way out lands in the offline
        queue. Events reported after shutdown are queued, not sent, unless
        the orchestrator owned its store: then the store is closed and
        later reports come back DISABLED.
        """
        if self._shut_down:
            return
        self._shut_down = True
        try:
            self._batcher.flush()
        except Exception as e:
            logger.error("Batch flush failed during shutdown", error=str(e), error_type=type(e).__name__)
        self._scheduler.shutdown()
        self._started = False
        logger.info("Reporter shut down", offline_queue_size=len(self._offline))
        self._close_owned()

    def _close_owned(self) -> None:
        if not self._closers:
            return
        for close in self._closers:
            try:
                close()
            except Exception as e:
                logger.error("Failed to release resource", error=str(e), error_type=type(e).__name__)
        self._closed = True

    def __enter__(self) -> Orchestrator:
        self.start()
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.shutdown()

    # === Status ===

    def health(self) -> HealthReport:
        return self._monitor.assess_health()

    def stats(self) -> dict[str, Any]:
        return {
            "enabled": self._settings.enabled,
            "quota": self._quota.stats(),
            "rate_limiter": self._limiter.stats(),
            "circuit_breaker": self._breaker.stats(),
            "batcher": self._batcher.stats(),
            "offline_queue": self._offline.stats(),
            "monitor": self._monitor.metrics(),
            "performance": self._monitor.performance_stats(),
            "breadcrumbs": len(self._ledger),
        }
