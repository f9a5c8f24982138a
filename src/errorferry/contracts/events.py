"""Typed records for captured error events and their breadcrumb trail.

Events are immutable once constructed. The outbound JSON shape is produced
only at the boundary by ``Event.to_payload()``; inside the pipeline every
component works with the typed record.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import TracebackType
from typing import Any

# Classification used for message-style reports (no exception object).
MESSAGE_CLASSIFICATION = "CustomMessage"


def utc_timestamp() -> str:
    """Return the current time as an ISO-8601 string with UTC offset."""
    return datetime.now(tz=UTC).isoformat()


def format_frame(filename: str, lineno: int | None, name: str) -> str:
    """Render a single stack frame the way ``traceback`` prints it."""
    return f'File "{filename}", line {lineno if lineno is not None else 0}, in {name}'


def _classification_of(exc: BaseException) -> str:
    cls = type(exc)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


@dataclass(frozen=True, slots=True)
class Breadcrumb:
    """One entry of the contextual trail attached to outgoing events.

    Attributes:
        timestamp: Epoch seconds when the breadcrumb was recorded
        message: Human-readable description
        category: Grouping label (navigation, user, http, query, custom)
        level: Severity label (debug, info, warning, error)
        data: Free-form structured detail
    """

    timestamp: float
    message: str
    category: str = "custom"
    level: str = "info"
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "message": self.message,
            "category": self.category,
            "level": self.level,
            "data": dict(self.data),
        }


@dataclass(frozen=True, slots=True)
class Event:
    """A captured error or diagnostic message bound for the endpoint.

    Owned by the orchestrator for the duration of one pipeline pass. The
    sanitizer returns a new Event rather than mutating this one.

    Attributes:
        message: Error message
        classification: Exception class or report type (``CustomMessage``)
        project: Project identifier the endpoint files the event under
        timestamp: ISO-8601 capture time
        level: Severity level
        environment: Deployment environment tag
        stack_frames: Formatted frames, innermost (most recent call) first
        file: Source file of the innermost frame, if known
        line: Source line of the innermost frame, if known
        http_status: HTTP status associated with the failure, if any
        context: Free-form structured context
        breadcrumbs: Snapshot of the breadcrumb ledger at capture time
        request: Request context block supplied by the capture layer
        server: Server context block supplied by the capture layer
        session: Session/user context block supplied by the capture layer
        platform: Host platform context block supplied by the capture layer
    """

    message: str
    classification: str
    project: str
    timestamp: str
    level: str = "error"
    environment: str = "production"
    stack_frames: tuple[str, ...] = ()
    file: str | None = None
    line: int | None = None
    http_status: int | None = None
    context: dict[str, Any] = field(default_factory=dict)
    breadcrumbs: tuple[Breadcrumb, ...] = ()
    request: dict[str, Any] | None = None
    server: dict[str, Any] | None = None
    session: dict[str, Any] | None = None
    platform: dict[str, Any] | None = None

    @property
    def stack_trace(self) -> str:
        return "\n".join(self.stack_frames)

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        project: str,
        environment: str = "production",
        http_status: int | None = None,
        breadcrumbs: tuple[Breadcrumb, ...] = (),
        context: dict[str, Any] | None = None,
        timestamp: str | None = None,
    ) -> Event:
        """Build an event from a raised exception and its traceback.

        Frames come from ``exc.__traceback__``; the innermost frame supplies
        ``file`` and ``line``. An exception that was never raised has no
        traceback and produces an event with no frames.
        """
        tb: TracebackType | None = exc.__traceback__
        summary = traceback.extract_tb(tb) if tb is not None else []
        frames = tuple(format_frame(f.filename, f.lineno, f.name) for f in reversed(summary))
        innermost = summary[-1] if summary else None
        return cls(
            message=str(exc),
            classification=_classification_of(exc),
            project=project,
            timestamp=timestamp or utc_timestamp(),
            environment=environment,
            stack_frames=frames,
            file=innermost.filename if innermost is not None else None,
            line=innermost.lineno if innermost is not None else None,
            http_status=http_status,
            context=dict(context or {}),
            breadcrumbs=breadcrumbs,
        )

    @classmethod
    def from_message(
        cls,
        message: str,
        *,
        project: str,
        environment: str = "production",
        level: str = "error",
        http_status: int | None = None,
        breadcrumbs: tuple[Breadcrumb, ...] = (),
        context: dict[str, Any] | None = None,
        timestamp: str | None = None,
        skip_frames: int = 0,
    ) -> Event:
        """Build a message-style event with the caller's stack as frames.

        skip_frames drops that many more innermost frames, so a wrapper
        that calls this on behalf of its own caller can leave itself out.
        """
        # Drop this factory's own frame plus any requested wrappers.
        summary = traceback.extract_stack()[: -(1 + max(0, skip_frames))]
        frames = tuple(format_frame(f.filename, f.lineno, f.name) for f in reversed(summary))
        return cls(
            message=message,
            classification=MESSAGE_CLASSIFICATION,
            project=project,
            timestamp=timestamp or utc_timestamp(),
            level=level,
            environment=environment,
            stack_frames=frames,
            http_status=http_status,
            context=dict(context or {}),
            breadcrumbs=breadcrumbs,
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the outbound JSON object.

        Optional blocks (http_status, request, server, session, platform)
        are omitted when absent rather than sent as null.
        """
        payload: dict[str, Any] = {
            "message": self.message,
            "exception_class": self.classification,
            "stack_trace": self.stack_trace,
            "file": self.file,
            "line": self.line,
            "project": self.project,
            "environment": self.environment,
            "timestamp": self.timestamp,
            "level": self.level,
            "context": dict(self.context),
            "breadcrumbs": [crumb.to_dict() for crumb in self.breadcrumbs],
        }
        if self.http_status is not None:
            payload["http_status"] = self.http_status
        for name in ("request", "server", "session", "platform"):
            block = getattr(self, name)
            if block is not None:
                payload[name] = dict(block)
        return payload
