# plansync/logging_config.py
"""
Stderr JSON logging configuration.

Host applications call configure_logging() once at startup; library modules
only ever create module-level loggers.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any


class JsonFormatter(logging.Formatter):
    """Formats log records as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON line."""
        log_data: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        if record.exc_info:
            log_data["exc"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """
    Configure the plansync logger to write to stderr.

    Clears existing handlers on the package logger so repeated calls
    don't produce duplicate lines.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit JSON lines (True) or plain text (False)
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    logger = logging.getLogger("plansync")
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
