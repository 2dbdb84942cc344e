"""Tests for structured logging configuration."""

import json
import logging
import sys

from relay.app.core.config import Settings
from relay.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
    setup_logging,
)


def make_record(msg="Test message", level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        output = JSONFormatter().format(make_record())
        data = json.loads(output)

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"]["file"] == "test.py"
        assert data["source"]["line"] == 1

    def test_json_format_with_context(self):
        record = make_record("Relaying request")
        record.client_ip = "203.0.113.7"
        record.target = "api.example.com"
        record.method = "GET"
        record.delay_ms = 500

        data = json.loads(JSONFormatter().format(record))

        assert data["client_ip"] == "203.0.113.7"
        assert data["target"] == "api.example.com"
        assert data["method"] == "GET"
        assert data["delay_ms"] == 500
        assert "extra" not in data

    def test_json_format_with_extra_fields(self):
        record = make_record("Custom event")
        record.route_prefix = "/fetch/"
        record.rate_limiting = True

        data = json.loads(JSONFormatter().format(record))

        assert data["extra"]["route_prefix"] == "/fetch/"
        assert data["extra"]["rate_limiting"] is True

    def test_json_format_with_exception(self):
        try:
            raise ValueError("Test error")
        except ValueError:
            record = make_record("Error occurred", logging.ERROR, sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        exception_text = "".join(data["exception"])
        assert "ValueError" in exception_text
        assert "Test error" in exception_text

    def test_unset_context_is_omitted(self):
        record = make_record()
        ContextFilter().filter(record)

        data = json.loads(JSONFormatter().format(record))

        assert "client_ip" not in data
        assert "extra" not in data


class TestContextFilter:
    """Test context filter for adding default fields."""

    def test_adds_default_fields(self):
        record = make_record()

        assert ContextFilter().filter(record) is True
        for field in ("client_ip", "target", "method", "delay_ms", "status_code"):
            assert hasattr(record, field)
            assert getattr(record, field) is None

    def test_preserves_existing_values(self):
        record = make_record()
        record.client_ip = "203.0.113.7"

        ContextFilter().filter(record)

        assert record.client_ip == "203.0.113.7"


class TestGetLoggingConfig:
    """Test logging configuration generation."""

    def test_default_text_format(self):
        config = get_logging_config(Settings(_env_file=None, log_format="text"))

        assert "standard" in config["formatters"]
        assert "structured" in config["formatters"]
        assert "json" not in config["formatters"]
        assert config["handlers"]["console"]["formatter"] == "standard"

    def test_structured_format(self):
        config = get_logging_config(
            Settings(_env_file=None, log_format="structured", log_level="debug")
        )

        assert config["handlers"]["console"]["formatter"] == "structured"
        assert config["handlers"]["console"]["level"] == "DEBUG"

    def test_json_format(self):
        config = get_logging_config(Settings(_env_file=None, log_format="json"))

        assert "json" in config["formatters"]
        assert config["handlers"]["console"]["formatter"] == "json"

    def test_relay_logger_configured(self):
        config = get_logging_config(Settings(_env_file=None))

        assert "relay" in config["loggers"]
        assert config["handlers"]["error_console"]["level"] == "ERROR"


class TestHelpers:

    def test_get_log_context_drops_none(self):
        context = get_log_context(client_ip="203.0.113.7", delay_ms=0, status_code=None)

        assert context == {"client_ip": "203.0.113.7", "delay_ms": 0}

    def test_get_log_context_extra(self):
        context = get_log_context(method="POST", reason="cap")

        assert context == {"method": "POST", "reason": "cap"}

    def test_get_logger(self):
        assert get_logger("relay.test").name == "relay.test"
        assert get_logger().name == "relay"

    def test_setup_logging_quiets_access_log(self):
        setup_logging(Settings(_env_file=None, log_level="DEBUG"))

        assert logging.getLogger("relay").level == logging.DEBUG
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
