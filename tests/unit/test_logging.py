# tests/unit/test_logging.py
"""
Tests for JSON log formatting and logger configuration.
"""

import json
import logging
import sys

from plansync.logging_config import JsonFormatter, configure_logging


def _record(msg: str, level: int = logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="plansync.sync.cache",
        level=level,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


def test_json_formatter_emits_one_object_per_line():
    """Test that records become JSON with level, logger and message."""
    line = JsonFormatter().format(_record("Invalidated initiatives:list"))

    data = json.loads(line)
    assert data["level"] == "INFO"
    assert data["logger"] == "plansync.sync.cache"
    assert data["msg"] == "Invalidated initiatives:list"
    assert "ts" in data
    assert "exc" not in data


def test_json_formatter_includes_exception():
    """Test that exception info is serialized into the exc field."""
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record("Patch failed", logging.ERROR, sys.exc_info())

    data = json.loads(JsonFormatter().format(record))
    assert "RuntimeError: boom" in data["exc"]


def test_configure_logging_replaces_handlers():
    """Test that repeated configuration leaves a single handler."""
    configure_logging("DEBUG")
    configure_logging("WARNING", json_output=False)

    logger = logging.getLogger("plansync")
    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING
    assert not isinstance(logger.handlers[0].formatter, JsonFormatter)
    assert logger.propagate is False

    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
