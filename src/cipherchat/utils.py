"""
CipherChat - Utility functions.

Provides logging setup, the millisecond clock and small display helpers
shared by the core components.
"""

import logging
import secrets
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .constants import (
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
    THEME_COLORS,
)

if TYPE_CHECKING:
    from .config import Config


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def format_fingerprint(fingerprint: str) -> str:
    """Format a fingerprint for display with spaces every 4 characters."""
    return " ".join(fingerprint[i : i + 4] for i in range(0, len(fingerprint), 4))


def pick_avatar_color() -> str:
    """Choose a cosmetic avatar colour from the palette."""
    return secrets.choice(THEME_COLORS)


def setup_logging(config: "Config", data_dir: Optional[Path] = None) -> logging.Logger:
    """
    Configure the cipherchat logger hierarchy from the [logging] section.

    Installs a stderr handler and, when file_logging is enabled, a
    RotatingFileHandler under <data_dir>/logs. Calling it again replaces
    the handlers rather than stacking them.
    """
    root = logging.getLogger("cipherchat")
    level_name = str(config.get("logging", "level", "INFO")).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)

    if config.get("logging", "console_logging", True):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        root.addHandler(console)

    if config.get("logging", "file_logging", False):
        log_dir = Path(data_dir or config.data_dir) / LOGS_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILENAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    return root
