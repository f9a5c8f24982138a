"""Structured logging for errorferry.

Every errorferry module logs through ``structlog.get_logger(__name__)``
with key/value context (``entry_id=...``, ``queue_size=...``) and never
touches handlers on import. A host that owns its logging setup can ignore
this module entirely.

For hosts and the CLI that want errorferry to own the setup,
``configure_logging()`` installs a single stderr handler whose
``ProcessorFormatter`` renders both structlog events and plain stdlib
records, so the reporter's diagnostics and the host's own
``logging.getLogger(...)`` output share one format.
"""

import logging
import sys
from typing import Any, TextIO

import structlog
from structlog.stdlib import ProcessorFormatter

# Capped at WARNING even in DEBUG mode; they log every connection and query.
_NOISY_LOGGERS: tuple[str, ...] = (
    "httpx",
    "httpcore",
    "sqlalchemy.engine",
)

# Bookkeeping keys ProcessorFormatter injects into every event dict
_FORMATTER_KEYS: tuple[str, ...] = ("_record", "_from_structlog")


def _drop_formatter_keys(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    for key in _FORMATTER_KEYS:
        del event_dict[key]
    return event_dict


def _pre_chain() -> list[Any]:
    """Processors shared by structlog events and foreign stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]


def _render_chain(json_output: bool) -> list[Any]:
    if json_output:
        return [
            _drop_formatter_keys,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    return [_drop_formatter_keys, structlog.dev.ConsoleRenderer(colors=False)]


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Route structlog and stdlib logging through one stderr handler.

    Safe to call repeatedly; each call replaces the root handlers.

    Args:
        json_output: One JSON object per line instead of console text
        level: Root log level name (DEBUG, INFO, WARNING, ERROR)
        stream: Output stream (default: sys.stderr at call time, so
            delivery diagnostics never mix with CLI output on stdout)
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level!r}")

    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(ProcessorFormatter(processors=_render_chain(json_output), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
