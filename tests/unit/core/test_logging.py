"""Tests for structured logging module.

Tests verify:
- Structured logging with JSON format
- Log output is valid JSON with timestamp, level, event and logger name
- Request ID bound from the context variable
"""

import json
from collections.abc import Generator
from io import StringIO

import pytest


@pytest.fixture(autouse=True)
def restore_logging() -> Generator[None, None, None]:
    """Route logging back to stdout after each test."""
    yield
    from model_runner.core.logging import configure_logging

    configure_logging(force=True)


def _capture(level: str = "INFO") -> StringIO:
    from model_runner.core.logging import configure_logging, reset_logging

    reset_logging()
    stream = StringIO()
    configure_logging(level=level, stream=stream, force=True)
    return stream


class TestConfigureLogging:
    """Test configure_logging() function."""

    def test_configure_logging_only_runs_once(self) -> None:
        """configure_logging is idempotent unless forced."""
        from model_runner.core.logging import configure_logging, get_logger

        stream = _capture("INFO")
        configure_logging(level="ERROR", stream=StringIO())  # no-op

        get_logger("once.test").info("still captured")
        assert stream.getvalue() != ""

    def test_configure_logging_force_reconfigures(self) -> None:
        from model_runner.core.logging import configure_logging, get_logger

        _capture("DEBUG")
        stream = StringIO()
        configure_logging(level="ERROR", stream=stream, force=True)

        get_logger("force.test").info("filtered")
        assert stream.getvalue() == ""


class TestGetLogger:
    """Test get_logger() function."""

    def test_get_logger_auto_configures(self) -> None:
        from model_runner.core.logging import get_logger, reset_logging

        reset_logging()
        logger = get_logger("auto.config.test")
        assert hasattr(logger, "info")
        assert hasattr(logger, "warning")

    def test_get_logger_binds_name(self) -> None:
        from model_runner.core.logging import get_logger

        stream = _capture()
        get_logger("my.module.name").info("named")

        log_record = json.loads(stream.getvalue().strip())
        assert log_record["logger"] == "my.module.name"


class TestJSONOutput:
    """Test that log output is valid JSON."""

    def test_log_output_fields(self) -> None:
        """Log output is JSON with timestamp, level, event and extra fields."""
        from model_runner.core.logging import get_logger

        stream = _capture()
        get_logger("json.test").info("Model loaded", model_id="phi2", size_gb=5.6)

        log_record = json.loads(stream.getvalue().strip())
        assert "timestamp" in log_record
        assert log_record["level"] == "info"
        assert log_record["event"] == "Model loaded"
        assert log_record["model_id"] == "phi2"
        assert log_record["size_gb"] == 5.6


class TestLogLevels:
    """Test log level filtering."""

    def test_debug_not_logged_at_info_level(self) -> None:
        from model_runner.core.logging import get_logger

        stream = _capture("INFO")
        get_logger("filter.test").debug("Debug message")

        assert stream.getvalue() == ""

    def test_warning_logged_at_info_level(self) -> None:
        from model_runner.core.logging import get_logger

        stream = _capture("INFO")
        get_logger("warn.test").warning("Queue full")

        log_record = json.loads(stream.getvalue().strip())
        assert log_record["level"] == "warning"


class TestRequestId:
    """Test request ID context support."""

    def test_request_id_roundtrip(self) -> None:
        from model_runner.core.logging import get_request_id, reset_request_id, set_request_id

        token = set_request_id("req-12345-abcde")
        try:
            assert get_request_id() == "req-12345-abcde"
        finally:
            reset_request_id(token)
        assert get_request_id() is None

    def test_request_id_in_log_output(self) -> None:
        from model_runner.core.logging import get_logger, reset_request_id, set_request_id

        stream = _capture()
        token = set_request_id("req-98765")
        try:
            get_logger("rid.test").info("Test with request id")
        finally:
            reset_request_id(token)

        log_record = json.loads(stream.getvalue().strip())
        assert log_record["request_id"] == "req-98765"

    def test_no_request_id_field_when_unset(self) -> None:
        from model_runner.core.logging import get_logger

        stream = _capture()
        get_logger("rid.test").info("No request id")

        assert "request_id" not in json.loads(stream.getvalue().strip())
