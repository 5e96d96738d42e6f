"""
Tests for logging infrastructure.

Verifies logger configuration, file creation, and handler cleanup.
"""

import logging
from unittest.mock import patch

import pytest

import murmur.utils.logger as logger_module
from murmur.utils.logger import get_log_dir, get_logger, shutdown_logging


@pytest.fixture
def fresh_logging(tmp_path):
    """Point the log directory at tmp_path and rebuild handlers."""
    shutdown_logging()
    with patch("murmur.utils.logger.user_log_path", return_value=tmp_path / "logs"):
        yield tmp_path / "logs"
    shutdown_logging()


class TestLoggerConfiguration:
    """Tests for logger setup and configuration."""

    def test_get_logger_returns_logger(self):
        assert isinstance(get_logger("murmur.test"), logging.Logger)

    def test_root_logger_singleton(self):
        assert get_logger("murmur") is get_logger("murmur")

    def test_module_loggers_are_children(self):
        assert get_logger("murmur.core.audio").name == "murmur.core.audio"

    def test_src_prefix_is_stripped(self):
        assert get_logger("src.murmur.core.asr").name == "murmur.core.asr"

    def test_log_directory_creation(self, fresh_logging):
        log_dir = get_log_dir()

        assert log_dir == fresh_logging
        assert log_dir.is_dir()

    def test_logger_writes_to_file(self, fresh_logging):
        logger = get_logger("murmur.core.test")
        logger.warning("Test message")
        for handler in logging.getLogger("murmur").handlers:
            handler.flush()

        content = (fresh_logging / "app.log").read_text()
        assert "Test message" in content
        assert "WARNING" in content
        assert "murmur.core.test" in content

    def test_does_not_propagate_to_root(self, fresh_logging):
        get_logger()
        assert logging.getLogger("murmur").propagate is False


class TestShutdownLogging:
    def test_shutdown_removes_handlers(self, fresh_logging):
        get_logger()
        assert logging.getLogger("murmur").handlers

        shutdown_logging()

        assert logging.getLogger("murmur").handlers == []
        assert logger_module._logger_instance is None
