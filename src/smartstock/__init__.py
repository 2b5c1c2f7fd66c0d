"""SmartStock: multi-workshop material inventory kept in an Excel workbook.

Importing the package configures the shared ``log`` used by every module.
Records go to stderr and to a rotating ``smartstock.log`` under ``.logs/`` at
the project root, or under ``$SMARTSTOCK_LOG_DIR`` when that is set.
``$SMARTSTOCK_LOG_LEVEL`` (``DEBUG``, ``INFO``, ...) overrides the level.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__version__ = "1.0.0"

LOG_DIR = Path(os.environ.get("SMARTSTOCK_LOG_DIR") or Path(__file__).resolve().parents[2] / ".logs")
LOG_FILE = LOG_DIR / "smartstock.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _log_level() -> int:
    name = os.environ.get("SMARTSTOCK_LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: unable to open SmartStock log file '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach file and console handlers to the package logger once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _log_level()
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    for handler in (_file_handler(formatter), console):
        if handler is not None:
            handler.setLevel(level)
            logger.addHandler(handler)
    return logger


log = _configure_logging()
log.debug("SmartStock %s logging to '%s'", __version__, LOG_FILE)
