"""Periodic task scheduling for background pipeline work.

The orchestrator never decides cadence on its own: it exposes callbacks
(batch age flush, offline replay, offline cleanup, window cleanup, health
check) and registers them with an injected Scheduler.

Thread Safety:
    ThreadScheduler runs each task on its own daemon thread. A task never
    overlaps with itself, since the next run only starts after the previous
    callback has returned. Callback exceptions are logged and the task
    keeps running; a misbehaving task must not kill reporting.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)

TaskCallback = Callable[[], object]


class Scheduler(Protocol):
    """Runs named callbacks on a fixed interval."""

    def schedule(self, name: str, interval_seconds: float, callback: TaskCallback) -> None:
        """Register callback to run every interval_seconds.

        Raises:
            ValueError: If a task with this name is already scheduled or the
                interval is not positive.
        """
        ...

    def cancel(self, name: str) -> None:
        """Stop a task. Cancelling an unknown task is not an error."""
        ...

    def shutdown(self) -> None:
        """Stop every task."""
        ...


def _validate(name: str, interval_seconds: float, existing: dict[str, object]) -> None:
    if interval_seconds <= 0:
        raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
    if name in existing:
        raise ValueError(f"Task {name!r} is already scheduled")


@dataclass(slots=True)
class _ThreadTask:
    name: str
    interval_seconds: float
    callback: TaskCallback
    stop: threading.Event
    thread: threading.Thread | None = None
    runs: int = 0
    failures: int = 0


class ThreadScheduler:
    """Scheduler backed by one daemon thread per task.

    Daemon threads never hold up interpreter exit; hosts that need a final
    flush call ``Orchestrator.shutdown()`` explicitly.

    Example:
        scheduler = ThreadScheduler()
        scheduler.schedule("offline_replay", 300.0, queue.replay)
        ...
        scheduler.shutdown()
    """

    def __init__(self, *, join_timeout: float = 5.0) -> None:
        self._join_timeout = join_timeout
        self._lock = threading.Lock()
        self._tasks: dict[str, _ThreadTask] = {}

    def schedule(self, name: str, interval_seconds: float, callback: TaskCallback) -> None:
        with self._lock:
            _validate(name, interval_seconds, self._tasks)
            task = _ThreadTask(name=name, interval_seconds=interval_seconds, callback=callback, stop=threading.Event())
            task.thread = threading.Thread(
                target=self._run_loop,
                args=(task,),
                name=f"errorferry-{name}",
                daemon=True,
            )
            self._tasks[name] = task
            task.thread.start()
        logger.debug("Scheduled task", task=name, interval_seconds=interval_seconds)

    def _run_loop(self, task: _ThreadTask) -> None:
        # wait() returns True once stop is set, ending the loop
        while not task.stop.wait(task.interval_seconds):
            task.runs += 1
            try:
                task.callback()
            except Exception as e:
                task.failures += 1
                logger.error(
                    "Scheduled task failed",
                    task=task.name,
                    error=str(e),
                    error_type=type(e).__name__,
                    failures=task.failures,
                )

    def cancel(self, name: str) -> None:
        with self._lock:
            task = self._tasks.pop(name, None)
        if task is None:
            return
        task.stop.set()
        if task.thread is not None and task.thread is not threading.current_thread():
            task.thread.join(timeout=self._join_timeout)

    def shutdown(self) -> None:
        with self._lock:
            names = list(self._tasks)
        for name in names:
            self.cancel(name)

    @property
    def task_names(self) -> list[str]:
        with self._lock:
            return sorted(self._tasks)


class ManualScheduler:
    """Scheduler that only runs tasks when told to.

    For tests, and for hosts that already own a loop (cron, an event loop,
    a request hook) and want to drive the periodic work themselves.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, tuple[float, TaskCallback]] = {}

    def schedule(self, name: str, interval_seconds: float, callback: TaskCallback) -> None:
        _validate(name, interval_seconds, self._tasks)
        self._tasks[name] = (interval_seconds, callback)

    def cancel(self, name: str) -> None:
        self._tasks.pop(name, None)

    def shutdown(self) -> None:
        self._tasks.clear()

    def run(self, name: str) -> object:
        """Run one task now and return what its callback returned.

        Unlike ThreadScheduler, exceptions propagate to the caller.

        Raises:
            KeyError: If no task with this name is scheduled.
        """
        _, callback = self._tasks[name]
        return callback()

    def run_all(self) -> dict[str, object]:
        return {name: callback() for name, (_, callback) in list(self._tasks.items())}

    def interval(self, name: str) -> float:
        return self._tasks[name][0]

    @property
    def task_names(self) -> list[str]:
        return sorted(self._tasks)
