"""
Adaptive Sync Logger Module
-------------------------------------------

This module configures a rotating, JSON-formatted logger for the adaptive sync engine.
Each process produces its own timestamped log file, and log records are written as
one-line JSON entries with the following core fields:

  - timestamp: ISO-formatted datetime string when the event occurred
  - level:     logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
  - logger:    the name of the logger that emitted the record
  - message:   the formatted log message

Any extra attributes you attach to log calls (via the `extra=` argument)
are automatically included in the JSON payload under their own keys.

Classes:
    JsonFormatter: Custom formatter that introspects a LogRecord and serializes
                   its data to JSON, omitting the standard logging attributes
                   listed in its `builtins` ignore set.

Globals:
    logger (logging.Logger): Package-level logger configured on import.

Usage:
    from adaptive_sync.utils.logger import logger

    logger.info("Cell searched", extra={"operation": "search", "run_id": run_id, "cell_id": cell.id})

Set LOG_TO_FILE=0 to keep the logger on the console only (the test suite does this).
"""

import json
import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from ..config import LOGS_DIR, LOG_LEVEL, LOG_TO_FILE


class JsonFormatter(logging.Formatter):
    builtins = {
        "name", "msg", "args", "levelname", "levelno",
        "pathname", "filename", "module", "exc_info",
        "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread",
        "threadName", "processName", "process", "taskName",
        "message", "asctime",
    }

    def format(self, record):
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level":     record.levelname,
            "logger":    record.name,
            "message":   record.getMessage(),
        }
        # Pick up any extra attributes
        for key, value in record.__dict__.items():
            if key not in self.builtins:
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)

# ----------------------------------------------------------------------------------------------------------

def setup_logger(
    name: str,
    level: str = LOG_LEVEL,
    log_file: Optional[Path] = None,
    to_file: bool = LOG_TO_FILE,
) -> logging.Logger:
    """
    Set up a logger with the JSON formatter on the console and, optionally, a rotating file.

    Args:
        name: Name of the logger
        level: Logging level name (default: LOG_LEVEL)
        log_file: Optional path to log file (default: LOGS_DIR/adaptive_sync_<timestamp>.log)
        to_file: Whether to attach the rotating file handler

    Returns:
        Configured logger instance
    """
    log = logging.getLogger(name)
    log.setLevel(level)
    if log.handlers:
        return log

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JsonFormatter())
    log.addHandler(console_handler)

    if to_file:
        if log_file is None:
            ts = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_file = LOGS_DIR / f"adaptive_sync_{ts}.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            filename=log_file,
            maxBytes=10_000_000,
            backupCount=5
        )
        file_handler.setFormatter(JsonFormatter())
        log.addHandler(file_handler)

    return log

# ----------------------------------------------------------------------------------------------------------

logger = setup_logger("adaptive_sync")
