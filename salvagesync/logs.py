from __future__ import annotations

import datetime as dt
import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

from colorama import just_fix_windows_console

LOGGER_NAME = "salvagesync"

# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    CYAN = "\x1b[36m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "SCAN": Ansi.CYAN,
    "HASH": Ansi.CYAN,
    "CHECKPOINT": Ansi.LIGHT_BROWN,
    "BROKEN": Ansi.RED,
    "WATCHDOG": Ansi.ORANGE,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except ValueError:
        # closed stream
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if record.levelno >= logging.WARNING and action_color == "":
                action_color = Ansi.ORANGE
            if action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            base = base.replace(path_text, f"{Ansi.WHITE}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str) -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(
    log_dir: Optional[Path] = None,
    prefix: str = "salvagesync",
    level: int = logging.INFO,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """Configure the package logger once.

    The console handler writes to stderr so that reports printed on stdout
    can be piped. A plain-text log file is added only when ``log_dir`` is set.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    if logger.handlers:
        return logger

    stream = stream or sys.stderr
    just_fix_windows_console()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(stream)
    ch.setLevel(level)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(stream), fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name(prefix)
        fh = logging.FileHandler(log_path, encoding="utf-8", errors="surrogateescape")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        fh.setLevel(level)
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[str] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
    logger.log(level, f"{action} | {message}", extra=extra)
