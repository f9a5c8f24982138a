"""Configuration schema and loading for errorferry.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.

Units are uniform across the schema: every duration is in seconds, every
size in bytes, and the circuit breaker failure threshold is a ratio in
[0, 1].
"""

import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class CaptureSettings(BaseModel):
    """Which external context blocks are attached to outgoing events.

    The blocks themselves are built by the capture layer; these toggles
    decide whether the orchestrator keeps them on the outbound payload.
    """

    model_config = {"frozen": True}

    request: bool = Field(default=True, description="Keep the request context block")
    session: bool = Field(default=True, description="Keep the session/user context block")
    server: bool = Field(default=True, description="Keep the server context block")


class QuotaSettings(BaseModel):
    """Volume and size ceilings enforced before any send.

    Example YAML:
        quota:
          daily_limit: 1000
          monthly_limit: 10000
          payload_size_limit: 512000
          burst_limit: 10
          burst_window_seconds: 60
    """

    model_config = {"frozen": True}

    daily_limit: int = Field(default=1000, gt=0, description="Events allowed per UTC day")
    monthly_limit: int = Field(default=10000, gt=0, description="Events allowed per UTC month")
    payload_size_limit: int = Field(default=512_000, gt=0, description="Largest serialized event in bytes")
    burst_limit: int = Field(default=10, gt=0, description="Events allowed within the burst window")
    burst_window_seconds: float = Field(default=60.0, gt=0, description="Burst window length")


class RateLimitSettings(BaseModel):
    """Per-minute send cap plus duplicate suppression."""

    model_config = {"frozen": True}

    requests_per_minute: int = Field(default=100, gt=0, description="Sends allowed per rate window")
    window_seconds: float = Field(default=60.0, gt=0, description="Rate window length")
    duplicate_window_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Identical fingerprints within this window are suppressed",
    )
    stack_signature_depth: int = Field(default=3, gt=0, description="Application frames used in the fingerprint")
    internal_frame_markers: tuple[str, ...] = Field(
        default=("site-packages/", "dist-packages/", "<frozen ", "/lib/python"),
        description="Frames whose text contains any marker are host-platform code and skipped",
    )


class RetrySettings(BaseModel):
    """Retry behavior for a single delivery.

    max_retries counts retries AFTER the first attempt, so max_retries=3
    means up to four attempts in total.
    """

    model_config = {"frozen": True}

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    initial_delay_seconds: float = Field(default=1.0, ge=0, description="Delay before the first retry")
    max_delay_seconds: float = Field(default=30.0, gt=0, description="Cap for any single delay")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential backoff base")
    jitter: bool = Field(default=True, description="Perturb each delay by up to +/-10%")
    attempt_timeout_seconds: float = Field(default=5.0, gt=0, description="Network timeout per attempt")


class CircuitBreakerSettings(BaseModel):
    """Failure-rate circuit breaker around the send capability."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=True, description="Guard sends with the circuit breaker")
    failure_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Failure ratio within the monitoring window that opens the circuit",
    )
    minimum_requests: int = Field(default=3, gt=0, description="Outcomes required before the ratio is evaluated")
    reset_timeout_seconds: float = Field(default=60.0, gt=0, description="Time spent OPEN before a half-open probe")
    monitoring_period_seconds: float = Field(default=300.0, gt=0, description="Rolling outcome window length")
    half_open_max_probes: int = Field(default=1, gt=0, description="Concurrent probes allowed while HALF_OPEN")


class BatchSettings(BaseModel):
    """Event batching before delivery."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=False, description="Buffer events and send them in batches")
    max_size: int = Field(default=10, gt=0, description="Flush when this many events are buffered")
    max_wait_seconds: float = Field(default=5.0, gt=0, description="Flush this long after the first buffered event")
    max_payload_bytes: int = Field(default=512_000, gt=0, description="Flush when the estimated batch size reaches this")


class CompressionSettings(BaseModel):
    """Conditional gzip compression of outbound payloads."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=True, description="Compress payloads above the threshold")
    threshold_bytes: int = Field(default=1024, ge=0, description="Minimum payload size worth compressing")
    level: int = Field(default=6, description="gzip compression level, clamped to 1..9")
    min_estimated_reduction: float = Field(
        default=0.2,
        ge=0.0,
        lt=1.0,
        description="Compress only when the estimated size reduction is at least this fraction",
    )

    @field_validator("level")
    @classmethod
    def clamp_level(cls, v: int) -> int:
        return max(1, min(9, v))


class OfflineSettings(BaseModel):
    """Durable offline queue for undelivered events."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=True, description="Queue undeliverable events for replay")
    max_queue_size: int = Field(default=50, gt=0, description="Oldest entries are evicted beyond this size")
    max_age_seconds: float = Field(default=86_400.0, gt=0, description="Entries older than this are discarded")
    max_attempts: int = Field(default=3, gt=0, description="Replay attempts before an entry is dropped")
    replay_interval_seconds: float = Field(default=300.0, gt=0, description="Cadence of the replay task")
    cleanup_interval_seconds: float = Field(default=3600.0, gt=0, description="Cadence of the age cleanup task")


class SecuritySettings(BaseModel):
    """Payload validation, redaction and endpoint policy."""

    model_config = {"frozen": True}

    max_payload_bytes: int = Field(default=1024 * 1024, gt=0, description="Largest event accepted by validation")
    require_https_environments: frozenset[str] = Field(
        default=frozenset({"production", "staging"}),
        description="Environments in which the endpoint must use https",
    )
    allowed_domains: tuple[str, ...] = Field(
        default=(),
        description="If non-empty, the endpoint host must equal or be a subdomain of one entry",
    )
    extra_sensitive_patterns: tuple[str, ...] = Field(
        default=(),
        description="Additional regular expressions whose matches are redacted",
    )
    redaction_marker: str = Field(default="[REDACTED]", min_length=1)

    @field_validator("extra_sensitive_patterns")
    @classmethod
    def validate_patterns(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid sensitive pattern {pattern!r}: {e}") from e
        return v


class StoreSettings(BaseModel):
    """Where persisted counters and queues live."""

    model_config = {"frozen": True}

    backend: Literal["memory", "database"] = Field(default="memory", description="State store backend")
    url: str | None = Field(default=None, description="SQLAlchemy URL for the database backend")

    @model_validator(mode="after")
    def validate_url(self) -> "StoreSettings":
        if self.backend == "database" and not self.url:
            raise ValueError("store.url is required when store.backend='database'")
        return self


class MonitorSettings(BaseModel):
    """Self-monitoring cadence and thresholds."""

    model_config = {"frozen": True}

    health_check_interval_seconds: float = Field(default=30.0, gt=0)
    high_latency_ms: float = Field(default=5000.0, gt=0)
    large_backlog: int = Field(default=10, ge=0)
    high_memory_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    silence_seconds: float = Field(default=86_400.0, gt=0)


class ReporterSettings(BaseModel):
    """Top-level errorferry configuration.

    This is the single source of truth for the reporting pipeline.
    All settings are validated and frozen after construction.
    """

    model_config = {"frozen": True}

    endpoint_url: str = Field(description="Collection endpoint URL")
    project: str = Field(min_length=1, description="Project identifier attached to every event")
    environment: str = Field(default="production", description="Deployment environment tag")
    enabled: bool = Field(default=True, description="Master switch; disabled reporters drop every event")
    max_breadcrumbs: int = Field(default=20, gt=0, description="Breadcrumb ledger capacity")

    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    compression: CompressionSettings = Field(default_factory=CompressionSettings)
    offline: OfflineSettings = Field(default_factory=OfflineSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)


# Dynaconf bookkeeping keys that are not reporter settings
_DYNACONF_KEYS = frozenset({"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"})


def _substitute(match: re.Match[str]) -> str:
    name, default = match.group(1), match.group(2)
    if name in os.environ:
        return os.environ[name]
    # Unresolved references are left for validation to reject
    return default if default is not None else match.group(0)


def _normalize(value: Any) -> Any:
    """Lowercase mapping keys and expand ``${VAR}`` / ``${VAR:-default}`` in strings."""
    if isinstance(value, dict):
        return {str(k).lower(): _normalize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize(item) for item in value]
    if isinstance(value, str):
        return _ENV_VAR_PATTERN.sub(_substitute, value)
    return value


def load_settings(config_path: Path) -> ReporterSettings:
    """Load reporter settings from a YAML file.

    ``ERRORFERRY_``-prefixed environment variables override the file, with
    ``__`` separating nested keys (``ERRORFERRY_QUOTA__DAILY_LIMIT=5``).
    String values may reference the environment as ``${VAR}`` or
    ``${VAR:-default}``. Schema defaults fill everything else.

    Raises:
        FileNotFoundError: config_path does not exist
        ValidationError: The merged configuration is invalid
    """
    from dynaconf import Dynaconf

    # Dynaconf treats a missing settings file as empty
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {config_path}")

    loaded = Dynaconf(
        envvar_prefix="ERRORFERRY",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    ).as_dict()
    raw_config = _normalize({k: v for k, v in loaded.items() if k not in _DYNACONF_KEYS})
    return ReporterSettings(**raw_config)


def resolve_config(settings: ReporterSettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-compatible dict for display.

    The endpoint URL is reduced to scheme and host because collection
    endpoints commonly embed a project token in the path.
    """
    from urllib.parse import urlsplit

    config_dict = settings.model_dump(mode="json")
    parts = urlsplit(settings.endpoint_url)
    if parts.scheme and parts.hostname:
        config_dict["endpoint_url"] = f"{parts.scheme}://{parts.hostname}/..."
    return config_dict
