"""
Unit tests for structured logging configuration.
"""

import json
import logging
import logging.handlers

import pytest

from courier.src.utils import logging_config
from courier.src.utils.logging_config import (
    ConsoleFormatter,
    JSONFormatter,
    LOGGER_NAMES,
    configure_logging,
    get_logger,
)


def _record(**extra):
    record = logging.LogRecord("courier.services", logging.INFO, __file__, 10, "Digest email sent", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    """Tests for JSONFormatter and ConsoleFormatter."""

    def test_json_includes_extras(self):
        data = json.loads(JSONFormatter().format(_record(recipient_id="user-1", notification_count=4)))
        assert data["level"] == "INFO"
        assert data["logger"] == "courier.services"
        assert data["message"] == "Digest email sent"
        assert data["recipient_id"] == "user-1"
        assert data["notification_count"] == 4
        assert data["timestamp"].endswith("Z")

    def test_json_serializes_unknown_types(self):
        data = json.loads(JSONFormatter().format(_record(channels={"email"})))
        assert data["channels"] == "{'email'}"

    def test_console_appends_extras(self):
        line = ConsoleFormatter().format(_record(period="daily"))
        assert "INFO - courier.services - Digest email sent" in line
        assert line.endswith("{'period': 'daily'}")

    def test_console_without_extras(self):
        assert ConsoleFormatter().format(_record()).endswith("Digest email sent")


class TestLoggers:
    """Tests for configure_logging and get_logger."""

    def test_configures_every_logger(self, monkeypatch):
        monkeypatch.setenv("COURIER_ENV", "development")
        monkeypatch.setenv("COURIER_LOG_LEVEL", "debug")
        loggers = configure_logging()
        assert set(loggers) == set(LOGGER_NAMES)
        for name, logger in loggers.items():
            assert logger.name == f"courier.{name}"
            assert logger.level == logging.DEBUG
            assert logger.propagate is False
            assert len(logger.handlers) == 1

    def test_production_writes_json_files(self, monkeypatch, tmp_path):
        monkeypatch.setenv("COURIER_ENV", "production")
        monkeypatch.setenv("COURIER_LOG_DIR", str(tmp_path))
        loggers = configure_logging()
        try:
            handler = loggers["scheduler"].handlers[0]
            assert isinstance(handler, logging.handlers.RotatingFileHandler)
            assert isinstance(handler.formatter, JSONFormatter)
            assert (tmp_path / "scheduler.log").exists()
        finally:
            for logger in loggers.values():
                for handler in logger.handlers:
                    handler.close()
            monkeypatch.setenv("COURIER_ENV", "test")
            configure_logging()

    def test_unknown_logger_name(self):
        with pytest.raises(ValueError):
            get_logger("nope")

    def test_get_logger_is_singleton(self, monkeypatch):
        monkeypatch.setattr(logging_config, "_loggers", None)
        assert get_logger("api") is get_logger("api")
