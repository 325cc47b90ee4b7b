"""Configuration of the application's logger."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime

LOGGER_NAME = "golaris"
TRACE = 5

_LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "panic": logging.CRITICAL,
    "disabled": logging.CRITICAL + 10,
}

_LEVEL_LABELS = {
    TRACE: "trace",
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "fatal",
}

_CONSOLE_LABELS = {
    TRACE: "TRC",
    logging.DEBUG: "DBG",
    logging.INFO: "INF",
    logging.WARNING: "WRN",
    logging.ERROR: "ERR",
    logging.CRITICAL: "FTL",
}


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="seconds")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "level": _LEVEL_LABELS.get(record.levelno, record.levelname.lower()),
            "time": _timestamp(record),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class _ConsoleFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        label = _CONSOLE_LABELS.get(record.levelno, record.levelname[:3].upper())
        line = f"{_timestamp(record)} {label} {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def set_log_level(level: str) -> int:
    """Configure the application logger for ``level`` and return the level used.

    Unknown level names fall back to info. Debug output is written in a
    human-readable console format, every other level as JSON lines.
    """
    logger = logging.getLogger(LOGGER_NAME)
    log_level = _LEVELS.get(level.lower())
    invalid = log_level is None
    if log_level is None:
        log_level = logging.INFO

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if log_level == logging.DEBUG:
        handler.setFormatter(_ConsoleFormatter())
    else:
        handler.setFormatter(_JsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(log_level)
    logger.propagate = False

    if invalid:
        logger.info("Invalid log level %s. Info log level is used", level)
    return log_level