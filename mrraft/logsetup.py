"""Logging set-up writing to standard output and a log file."""

from __future__ import annotations

import json
import logging
import sys

LOGGER_NAME = "mrraft"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "FATAL",
}


class _ConsoleFormatter(logging.Formatter):
    """Formats ``LEVEL<TAB>message`` with optional JSON ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        level = _LEVEL_NAMES.get(record.levelno, record.levelname)
        line = f"{level}\t{record.getMessage()}"
        fields = getattr(record, "fields", None)
        if fields:
            line += "\t" + json.dumps(fields, ensure_ascii=False)
        return line


def clear_log_file(path) -> None:
    """Truncate (or create) the log file."""
    with open(path, "wb"):
        pass


def parse_level(name: str) -> int:
    """Map a level name to a logging level; unknown names mean INFO."""
    return _LEVELS.get(name, logging.INFO)


def init_logger(level: str, logfile) -> logging.Logger:
    """Configure the package logger to write to stdout and ``logfile``."""
    print(f"log file {logfile}")
    try:
        clear_log_file(logfile)
    except OSError:
        pass

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(logfile, mode="a", encoding="utf-8")
    stream_handler = logging.StreamHandler(sys.stdout)
    formatter = _ConsoleFormatter()
    for handler in (stream_handler, file_handler):
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(parse_level(level))
    logger.propagate = False
    return logger