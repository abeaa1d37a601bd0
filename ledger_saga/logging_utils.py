"""Logging setup for ledger-saga."""

import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

from ledger_saga.config.loader import LoggingConfig

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_logging_lock = threading.Lock()

_logger = logging.getLogger(__name__)


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure stream (and optional file) logging for the process."""
    config = config or LoggingConfig()
    level = getattr(logging, config.level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers: List[logging.Handler] = []

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if config.file:
        try:
            Path(config.file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(config.file)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as exc:
            _logger.warning("Failed to open log file %s: %s", config.file, exc)

    with _logging_lock:
        logging.basicConfig(level=level, handlers=handlers, force=True)

