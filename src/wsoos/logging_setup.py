"""
Logging configuration for the wsoos process.

Two output formats:

    text   2024-01-01 12:00:00 [INFO] wsoos.server: HTTP Server listening ...
    json   {"time": "...", "level": "INFO", "logger": "wsoos.server", "message": "..."}

JSON is meant for log aggregators, text for humans. Both go to stdout.
"""

import json
import logging
import sys
import time
from typing import Optional, TextIO


TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LOG_SETUP_DONE = False
_HANDLER: Optional[logging.Handler] = None


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": time.strftime("%Y-%m-%dT%H:%M:%S%z", time.localtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(
    level: int = logging.INFO,
    log_format: str = "text",
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Configure the "wsoos" logger.

    Calling it again only updates the level and format; handlers are never
    stacked.

    Args:
        level: logging level constant.
        log_format: "text" or "json".
        stream: Output stream for the first call (stdout by default).
    """
    global _LOG_SETUP_DONE, _HANDLER

    logger = logging.getLogger("wsoos")

    if not _LOG_SETUP_DONE:
        _HANDLER = logging.StreamHandler(stream or sys.stdout)
        logger.addHandler(_HANDLER)
        logger.propagate = False
        _LOG_SETUP_DONE = True

    if log_format == "json":
        _HANDLER.setFormatter(JSONFormatter())
    else:
        _HANDLER.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT))

    logger.setLevel(level)
    return logger
