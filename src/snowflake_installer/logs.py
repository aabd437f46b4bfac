"""Coloured ``[LEVEL] message`` console logging for the CLI."""

from __future__ import annotations

import logging
import sys

import colorlog

LOGGER_NAME = "snowflake_installer"
LOG_FORMAT = "%(log_color)s[%(levelname)s]%(reset)s %(message)s"
LOG_COLORS = {
    "DEBUG": "yellow",
    "INFO": "blue",
    "WARN": "bold_yellow",
    "ERROR": "bold_red",
    "CRITICAL": "bold_red",
}


def configure_logging(debug: bool = False) -> None:
    """Attach a single coloured stderr handler to the package logger.

    Colours are dropped when stderr is not a terminal.
    """
    logging.addLevelName(logging.WARNING, "WARN")
    root = logging.getLogger(LOGGER_NAME)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = colorlog.StreamHandler(sys.stderr)
    handler.setFormatter(colorlog.ColoredFormatter(LOG_FORMAT, log_colors=LOG_COLORS, stream=sys.stderr))
    root.addHandler(handler)
    root.propagate = False
