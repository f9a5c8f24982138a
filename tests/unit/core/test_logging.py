"""Tests for structured logging configuration."""

import io
import json
import logging
from collections.abc import Iterator

import pytest

from errorferry.core.logging import configure_logging, get_logger


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestLoggingConfig:
    def test_get_logger_returns_bound_logger(self) -> None:
        logger = get_logger("errorferry.test")

        assert hasattr(logger, "info")
        assert hasattr(logger, "bind")

    def test_json_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True)

        get_logger("errorferry.test").info("Event queued offline", entry_id="abc", queue_size=3)

        log_line = capsys.readouterr().err.strip().split("\n")[-1]
        data = json.loads(log_line)
        assert data["event"] == "Event queued offline"
        assert data["entry_id"] == "abc"
        assert data["queue_size"] == 3
        assert data["level"] == "info"
        assert "timestamp" in data

    def test_console_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=False)

        get_logger("errorferry.test").warning("Circuit opened", failures=4)

        err = capsys.readouterr().err
        assert "Circuit opened" in err
        assert not err.strip().startswith("{")

    def test_stdlib_loggers_share_the_format(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Host application loggers render through the same processor chain."""
        configure_logging(json_output=True)

        logging.getLogger("host.app").warning("message from host")

        data = json.loads(capsys.readouterr().err.strip().split("\n")[-1])
        assert data["event"] == "message from host"
        assert data["level"] == "warning"

    def test_level_filters_records(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="WARNING")

        get_logger("errorferry.test").info("hidden")

        assert "hidden" not in capsys.readouterr().err

    def test_noisy_loggers_stay_quiet_in_debug(self) -> None:
        configure_logging(level="DEBUG")

        assert logging.getLogger().level == logging.DEBUG
        for name in ("httpx", "httpcore", "sqlalchemy.engine"):
            assert logging.getLogger(name).getEffectiveLevel() >= logging.WARNING

    def test_explicit_stream(self) -> None:
        stream = io.StringIO()
        configure_logging(json_output=True, stream=stream)

        get_logger("errorferry.test").info("Batch sent", count=2)

        assert json.loads(stream.getvalue().splitlines()[-1])["count"] == 2

    def test_unknown_level_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging(level="CHATTY")
