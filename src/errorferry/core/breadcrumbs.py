"""Bounded breadcrumb ledger.

Ring buffer of contextual trail entries snapshotted onto every outgoing
event. Oldest entries are evicted first once the configured maximum is
exceeded.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

from errorferry.contracts.events import Breadcrumb
from errorferry.core.clock import DEFAULT_CLOCK, Clock

# Queries are truncated so one breadcrumb cannot carry a whole SQL statement
_MAX_QUERY_LENGTH = 100


class BreadcrumbLedger:
    """Thread-safe ring buffer of breadcrumbs.

    Example:
        ledger = BreadcrumbLedger(max_breadcrumbs=20)
        ledger.log_navigation("/cart", "/checkout")
        event = Event.from_exception(exc, project="shop", breadcrumbs=ledger.snapshot())
    """

    def __init__(self, max_breadcrumbs: int = 20, *, clock: Clock | None = None) -> None:
        if max_breadcrumbs < 1:
            raise ValueError(f"max_breadcrumbs must be >= 1, got {max_breadcrumbs}")
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._lock = threading.Lock()
        self._crumbs: deque[Breadcrumb] = deque(maxlen=max_breadcrumbs)

    def add(
        self,
        message: str,
        *,
        category: str = "custom",
        level: str = "info",
        data: dict[str, Any] | None = None,
    ) -> Breadcrumb:
        crumb = Breadcrumb(
            timestamp=self._clock.time(),
            message=message,
            category=category,
            level=level,
            data=dict(data or {}),
        )
        with self._lock:
            # deque(maxlen) evicts the oldest entry on overflow
            self._crumbs.append(crumb)
        return crumb

    def log_navigation(self, from_url: str, to_url: str) -> Breadcrumb:
        return self.add(
            f"Navigated from {from_url} to {to_url}",
            category="navigation",
            data={"from": from_url, "to": to_url},
        )

    def log_user_action(self, action: str, data: dict[str, Any] | None = None) -> Breadcrumb:
        return self.add(f"User action: {action}", category="user", data=data)

    def log_http_request(self, method: str, url: str, status_code: int | None = None) -> Breadcrumb:
        data: dict[str, Any] = {"method": method, "url": url}
        if status_code is not None:
            data["status_code"] = status_code
        level = "error" if status_code is not None and status_code >= 400 else "info"
        return self.add(f"{method} {url}", category="http", level=level, data=data)

    def log_query(self, query: str, duration_ms: float | None = None) -> Breadcrumb:
        truncated = query if len(query) <= _MAX_QUERY_LENGTH else query[:_MAX_QUERY_LENGTH] + "..."
        data: dict[str, Any] = {"query": truncated}
        if duration_ms is not None:
            data["duration_ms"] = duration_ms
        return self.add("Database query", category="query", data=data)

    def snapshot(self) -> tuple[Breadcrumb, ...]:
        """Return the current trail, oldest first."""
        with self._lock:
            return tuple(self._crumbs)

    def clear(self) -> None:
        with self._lock:
            self._crumbs.clear()

    def set_max(self, max_breadcrumbs: int) -> None:
        """Change capacity. Shrinking keeps the newest entries."""
        if max_breadcrumbs < 1:
            raise ValueError(f"max_breadcrumbs must be >= 1, got {max_breadcrumbs}")
        with self._lock:
            self._crumbs = deque(self._crumbs, maxlen=max_breadcrumbs)

    @property
    def max_breadcrumbs(self) -> int:
        # maxlen is always set by construction
        return self._crumbs.maxlen or 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._crumbs)
