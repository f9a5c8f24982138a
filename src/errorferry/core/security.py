"""Payload validation, sensitive-content redaction and endpoint policy.

Everything an event carries is treated as potentially hostile to privacy:
messages and stack traces may embed credentials, context maps may hold
tokens under innocuous-looking keys. The sanitizer redacts both shapes
before anything leaves the process.

Redaction is idempotent. Applying ``sanitize`` to an already sanitized
event returns an equal event.
"""

from __future__ import annotations

import dataclasses
import json
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import structlog

from errorferry.contracts.events import Breadcrumb, Event
from errorferry.contracts.results import ValidationResult

if TYPE_CHECKING:
    from errorferry.core.config import ReporterSettings, SecuritySettings

logger = structlog.get_logger(__name__)

# (label, pattern) pairs. Labels are what detect_sensitive_data reports.
DEFAULT_SENSITIVE_PATTERNS: tuple[tuple[str, str], ...] = (
    ("Credit Card", r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),
    ("SSN", r"\b\d{3}-\d{2}-\d{4}\b"),
    ("Email", r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    ("PII", r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),  # phone number
    ("PII", r"\b(?:[0-9]{1,3}\.){3}[0-9]{1,3}\b"),  # IPv4 address
    ("JWT Token", r"\beyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*\b"),
    ("API Key", r"\b[Aa]pi[_-]?[Kk]ey[:\s]*[A-Za-z0-9_-]{20,}\b"),
    ("Password", r"(?i)[\"']?password[\"']?\s*[:\s=]\s*[\"'][^\"']*[\"']?"),
    ("PII", r"\b[Aa]ccess[_-]?[Tt]oken[:\s]*[A-Za-z0-9_-]{20,}\b"),
)

# Map keys containing any of these (case-insensitive) are redacted wholesale
SENSITIVE_KEY_FRAGMENTS: tuple[str, ...] = ("password", "token", "secret", "key", "auth", "credential")

KNOWN_ENVIRONMENTS: frozenset[str] = frozenset({"development", "staging", "production"})

# Replacements can butt new text against old; a few passes reach a fixed point
_MAX_REDACTION_PASSES = 5


def is_sensitive_key(key: object) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in SENSITIVE_KEY_FRAGMENTS)


class SecurityValidator:
    """Validates events and endpoints and redacts sensitive content.

    Thread Safety:
        validate/sanitize are read-only over the pattern list. Pattern
        add/remove should happen at configuration time, not concurrently
        with reporting.

    Example:
        validator = SecurityValidator(settings.security)
        clean = validator.sanitize(event)
        result = validator.validate(clean)
        if not result.valid:
            ...
    """

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._marker = settings.redaction_marker
        self._patterns: list[tuple[str, str, re.Pattern[str]]] = [
            (label, source, re.compile(source)) for label, source in DEFAULT_SENSITIVE_PATTERNS
        ]
        for source in settings.extra_sensitive_patterns:
            self.add_pattern(source)

    # === Pattern management ===

    def add_pattern(self, pattern: str, *, label: str = "Custom") -> None:
        """Add a redaction pattern.

        Raises:
            ValueError: If pattern is not a valid regular expression.
        """
        try:
            compiled = re.compile(pattern)
        except re.error as e:
            raise ValueError(f"Invalid sensitive pattern {pattern!r}: {e}") from e
        if compiled.search(self._marker):
            # A pattern matching the marker would redact its own output forever
            raise ValueError(f"Sensitive pattern {pattern!r} matches the redaction marker")
        self._patterns.append((label, pattern, compiled))

    def remove_pattern(self, pattern: str) -> bool:
        """Remove a pattern by its source text. Returns whether it was present."""
        for index, (_, source, _) in enumerate(self._patterns):
            if source == pattern:
                del self._patterns[index]
                return True
        return False

    @property
    def patterns(self) -> tuple[str, ...]:
        return tuple(source for _, source, _ in self._patterns)

    # === Sanitization ===

    def sanitize_text(self, text: str) -> str:
        """Replace every sensitive match in text with the redaction marker."""
        for _ in range(_MAX_REDACTION_PASSES):
            redacted = text
            for _, _, compiled in self._patterns:
                redacted = compiled.sub(self._marker, redacted)
            if redacted == text:
                break
            text = redacted
        return text

    def sanitize_value(self, value: Any) -> Any:
        """Recursively sanitize a JSON-like structure.

        Map entries whose key looks sensitive are replaced by the marker
        whatever their value; strings are pattern-redacted; everything
        else passes through.
        """
        if isinstance(value, str):
            return self.sanitize_text(value)
        if isinstance(value, dict):
            return {
                key: self._marker if is_sensitive_key(key) else self.sanitize_value(item)
                for key, item in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self.sanitize_value(item) for item in value]
        return value

    def _sanitize_block(self, block: dict[str, Any] | None) -> dict[str, Any] | None:
        if block is None:
            return None
        return self.sanitize_value(block)

    def sanitize(self, event: Event) -> Event:
        """Return a copy of event with sensitive content redacted.

        Covers the message, every stack frame, context, breadcrumb messages
        and data, and the request/session/server/platform blocks.
        """
        breadcrumbs = tuple(
            dataclasses.replace(
                crumb,
                message=self.sanitize_text(crumb.message),
                data=self.sanitize_value(crumb.data),
            )
            if isinstance(crumb, Breadcrumb)
            else crumb
            for crumb in event.breadcrumbs
        )
        return dataclasses.replace(
            event,
            message=self.sanitize_text(event.message) if isinstance(event.message, str) else event.message,
            stack_frames=tuple(self.sanitize_text(frame) for frame in event.stack_frames),
            context=self.sanitize_value(event.context) if isinstance(event.context, dict) else event.context,
            breadcrumbs=breadcrumbs,
            request=self._sanitize_block(event.request),
            session=self._sanitize_block(event.session),
            server=self._sanitize_block(event.server),
            platform=self._sanitize_block(event.platform),
        )

    # === Validation ===

    def detect_sensitive_data(self, event: Event) -> list[str]:
        """Return the labels of sensitive patterns present in the event, in pattern order."""
        text = " ".join(
            [
                str(event.message),
                event.stack_trace,
                json.dumps(event.context, default=str),
                json.dumps(event.session or {}, default=str),
                json.dumps([c.to_dict() for c in event.breadcrumbs if isinstance(c, Breadcrumb)], default=str),
            ]
        )
        labels: list[str] = []
        for label, _, compiled in self._patterns:
            if label not in labels and compiled.search(text):
                labels.append(label)
        return labels

    def payload_size(self, event: Event) -> int:
        return len(json.dumps(event.to_payload(), default=str).encode("utf-8"))

    def validate(self, event: Event) -> ValidationResult:
        """Check required fields, field types and serialized size.

        Sensitive content and unknown environments produce warnings, not
        errors: the sanitizer handles the former and the latter is a
        configuration smell rather than a broken event.
        """
        errors: list[str] = []
        warnings: list[str] = []

        if not isinstance(event.message, str) or not event.message.strip():
            errors.append("Error message is required")
        if not isinstance(event.project, str) or not event.project.strip():
            errors.append("Project name is required")
        if not isinstance(event.timestamp, str) or not event.timestamp.strip():
            errors.append("Timestamp is required")

        # bool is an int subclass but never a line number or status code
        if event.line is not None and (isinstance(event.line, bool) or not isinstance(event.line, int)):
            errors.append("Line number must be numeric")
        if event.http_status is not None and (
            isinstance(event.http_status, bool) or not isinstance(event.http_status, int)
        ):
            errors.append("HTTP status must be an integer")
        if not isinstance(event.breadcrumbs, (tuple, list)):
            errors.append("Breadcrumbs must be a list")
        if not isinstance(event.context, dict):
            errors.append("Context must be a mapping")

        if not errors:
            size = self.payload_size(event)
            if size > self._settings.max_payload_bytes:
                errors.append(
                    f"Payload size ({size} bytes) exceeds maximum allowed size ({self._settings.max_payload_bytes} bytes)"
                )
            found = self.detect_sensitive_data(event)
            if found:
                warnings.append(f"Potential sensitive data detected: {', '.join(found)}")

        if event.environment not in KNOWN_ENVIRONMENTS:
            warnings.append(f"Environment should be one of: {', '.join(sorted(KNOWN_ENVIRONMENTS))}")

        return ValidationResult(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))

    def validate_endpoint(self, url: str, environment: str) -> ValidationResult:
        """Check the destination URL against the endpoint policy.

        The URL must be http(s) with a host; environments listed in
        ``require_https_environments`` must use https; a non-empty
        ``allowed_domains`` list restricts the host to those domains and
        their subdomains.
        """
        errors: list[str] = []
        try:
            parts = urlsplit(url)
            host = parts.hostname
        except ValueError:
            return ValidationResult(valid=False, errors=("Invalid endpoint URL format",))

        if parts.scheme not in ("http", "https") or not host:
            return ValidationResult(valid=False, errors=("Invalid endpoint URL format",))

        if environment in self._settings.require_https_environments and parts.scheme != "https":
            errors.append(f"HTTPS is required for the endpoint URL in {environment}")

        allowed = self._settings.allowed_domains
        if allowed and not any(host == domain or host.endswith("." + domain) for domain in allowed):
            errors.append(f"Domain {host} is not in allowed domains list")

        return ValidationResult(valid=not errors, errors=tuple(errors))

    def validate_configuration(self, settings: ReporterSettings) -> ValidationResult:
        """Check a complete reporter configuration before it is used."""
        errors: list[str] = []
        warnings: list[str] = []

        if not settings.endpoint_url.strip():
            errors.append("Endpoint URL is required")
        else:
            errors.extend(self.validate_endpoint(settings.endpoint_url, settings.environment).errors)

        if not settings.project.strip():
            errors.append("Project name is required")

        if settings.environment not in KNOWN_ENVIRONMENTS:
            warnings.append(f"Environment should be one of: {', '.join(sorted(KNOWN_ENVIRONMENTS))}")
        if settings.retry.max_retries > 10:
            warnings.append("Retry count should be between 0 and 10")
        timeout = settings.retry.attempt_timeout_seconds
        if timeout < 1.0 or timeout > 30.0:
            warnings.append("Timeout should be between 1 and 30 seconds")

        return ValidationResult(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))
