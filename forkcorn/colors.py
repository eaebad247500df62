"""
forkcorn/colors.py — Colored log output for supervisor and workers.

Every line is ``LEVEL    [pid] message`` so output from forked workers
stays readable when it interleaves. Access lines are ordinary records
logged with ``access_extra(...)``; the formatter recognises them and
colors the method and status, while any other handler still gets the
plain ``%``-formatted message.
"""

import logging
import os
import sys
from typing import Optional

RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"

LEVEL_STYLES = {
    logging.DEBUG: "\033[2;36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[1;31m",
    logging.CRITICAL: "\033[1;37;41m",
}

METHOD_STYLES = {
    "GET": "\033[1;32m",
    "POST": "\033[1;34m",
    "PUT": "\033[1;33m",
    "PATCH": "\033[1;35m",
    "DELETE": "\033[1;31m",
    "HEAD": "\033[1;36m",
    "OPTIONS": "\033[1;37m",
}

# Indexed by status class: 1xx .. 5xx.
_STATUS_STYLES = (BOLD, BOLD, "\033[1;32m", "\033[1;36m", "\033[1;33m", "\033[1;31m")

REQUEST_LOG = "%s - %s %s %s"
RESPONSE_LOG = "%s - %s %s -> %s"


def stream_supports_color(stream) -> bool:
    """NO_COLOR wins over FORCE_COLOR; otherwise color only real terminals."""
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def status_style(status) -> str:
    code = int(str(status).split()[0])
    return _STATUS_STYLES[max(0, min(code // 100, 5))]


def access_extra(status=None) -> dict:
    """``extra=`` mapping that marks a record as an access line."""
    return {"access": True, "status": status}


class ColorFormatter(logging.Formatter):
    """
    Formats ``LEVEL    [pid] message`` with optional ANSI colors.

    Records carrying ``access=True`` are expected to use REQUEST_LOG or
    RESPONSE_LOG with ``(client, method, target, tail)`` args.
    """

    def __init__(self, use_color: bool = False, show_timestamp: bool = False):
        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")
        self.use_color = use_color
        self.show_timestamp = show_timestamp

    def paint(self, style: str, text: str) -> str:
        if not self.use_color or not style:
            return text
        return f"{style}{text}{RESET}"

    def format(self, record: logging.LogRecord) -> str:
        parts = [self.paint(LEVEL_STYLES.get(record.levelno, ""), f"{record.levelname:<8}")]
        if self.show_timestamp:
            parts.append(self.paint(DIM, self.formatTime(record, self.datefmt)))
        parts.append(self.paint(DIM, f"[{record.process}]"))
        if getattr(record, "access", False):
            parts.append(self.format_access(record))
        else:
            parts.append(record.getMessage())
        text = " ".join(parts)
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text

    def format_access(self, record: logging.LogRecord) -> str:
        client, method, target, tail = record.args
        method_text = self.paint(METHOD_STYLES.get(method.upper(), BOLD), f"{method:<7}")
        status = getattr(record, "status", None)
        if status is None:
            tail_text = self.paint(DIM, str(tail))
        else:
            tail_text = "-> " + self.paint(status_style(status), str(tail))
        return f"{self.paint(DIM, client)} - {method_text} {self.paint(BOLD, target)} {tail_text}"


def setup_logging(level: int = logging.INFO, stream=None,
                  use_color: Optional[bool] = None) -> logging.Logger:
    """Install one ColorFormatter handler on the ``forkcorn`` logger."""
    stream = stream or sys.stdout
    if use_color is None:
        use_color = stream_supports_color(stream)
    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        ColorFormatter(use_color=use_color, show_timestamp=level <= logging.DEBUG)
    )
    logger = logging.getLogger("forkcorn")
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    logger.propagate = False
    return logger
