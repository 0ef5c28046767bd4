"""Logging configuration for the drops ledger.

Call ``setup_logging()`` once at process start (the CLI does). Modules
use ``logging.getLogger(__name__)`` and never configure handlers
themselves.

The level comes from the ``DROPS_LOG_LEVEL`` environment variable
(default WARNING, so the CLI's JSON output stays clean). Passing a
``log_file`` adds a rotating file handler.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


DEFAULT_LOG_LEVEL = "WARNING"
LOG_FORMAT = "%(asctime)s | %(levelname)-5s | %(name)-28s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_SIZE = 10 * 1024 * 1024
BACKUP_COUNT = 5

_configured = False


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """Configure the ``drops`` logger hierarchy. Idempotent."""
    global _configured
    if _configured:
        return

    level_name = (level or os.getenv("DROPS_LOG_LEVEL", DEFAULT_LOG_LEVEL)).upper()
    root = logging.getLogger("drops")
    root.setLevel(getattr(logging, level_name, logging.WARNING))

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=MAX_LOG_SIZE, backupCount=BACKUP_COUNT, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    _configured = True
