"""Unit tests for logging infrastructure."""
import pytest
import logging
from pathlib import Path
from hlsq.infrastructure.logging import setup_logging


def test_setup_logging_creates_log_file(tmp_path):
    """Test that setup_logging creates worker.log in the state directory."""
    state_dir = tmp_path / "state"

    logger = setup_logging(state_dir, debug=False)

    assert logger is not None
    assert isinstance(logger, logging.Logger)

    log_file = state_dir / "worker.log"
    assert log_file.exists()


def test_setup_logging_debug_mode(tmp_path):
    """Test setup_logging in debug mode."""
    setup_logging(tmp_path, debug=True)

    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_normal_mode(tmp_path):
    """Test setup_logging in normal mode."""
    setup_logging(tmp_path, debug=False)

    assert logging.getLogger().level == logging.INFO


def test_setup_logging_custom_path(tmp_path):
    """Test that an explicit log path wins over the state directory."""
    custom = tmp_path / "logs" / "custom.log"

    setup_logging(tmp_path / "state", log_path=custom)

    assert custom.exists()
    assert not (tmp_path / "state" / "worker.log").exists()


def test_log_messages_written(tmp_path):
    """Test that module loggers end up in worker.log."""
    setup_logging(tmp_path)

    logging.getLogger("hlsq.pipeline.dispatcher").info("Starting job hls_123")
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = (tmp_path / "worker.log").read_text()
    assert "Logging initialized" in content
    assert "INFO - Starting job hls_123" in content
