"""
Tests for root logger setup.
"""

import logging
import logging.handlers

import pytest

from triage_agent import config
from triage_agent.logging_config import setup_logging


@pytest.fixture
def bare_root():
    """Root logger without handlers installed by earlier entry-point imports."""
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    root.handlers = [h for h in saved_handlers if not getattr(h, "_triage_handler", False)]
    yield root
    for handler in root.handlers:
        if getattr(handler, "_triage_handler", False):
            handler.close()
    root.handlers = saved_handlers
    root.setLevel(saved_level)


def _ours(root):
    return [h for h in root.handlers if getattr(h, "_triage_handler", False)]


def test_file_handler_uses_configured_rotation(bare_root, tmp_path):
    log_file = tmp_path / "nested" / "agent.log"
    setup_logging("DEBUG", log_file=log_file)

    [rotating] = [h for h in _ours(bare_root) if isinstance(h, logging.handlers.RotatingFileHandler)]
    assert rotating.baseFilename == str(log_file)
    assert rotating.maxBytes == config.LOG_MAX_BYTES
    assert rotating.backupCount == config.LOG_BACKUP_COUNT
    assert log_file.parent.is_dir()
    assert bare_root.level == logging.DEBUG


def test_repeat_call_only_changes_level(bare_root, tmp_path):
    setup_logging("INFO", log_file=tmp_path / "agent.log")
    setup_logging("WARNING", log_file=tmp_path / "other.log")

    handlers = _ours(bare_root)
    assert len(handlers) == 2
    assert all(h.level == logging.WARNING for h in handlers)
    assert not (tmp_path / "other.log").exists()


def test_default_level_comes_from_settings(bare_root, tmp_path, monkeypatch):
    monkeypatch.setattr("triage_agent.logging_config.LOG_LEVEL", "WARNING")
    setup_logging(log_file=tmp_path / "agent.log")

    assert bare_root.level == logging.WARNING
    assert logging.getLogger("mcp").level == logging.WARNING
