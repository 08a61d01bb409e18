"""Logging setup for the crossbin CLI."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Configure the root logger.

    Args:
        verbose: Log DEBUG to the console instead of WARNING
        log_file: Also log INFO and above to this rotating file
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    for handler in list(logger.handlers):
        if getattr(handler, "_crossbin", False):
            logger.removeHandler(handler)
            handler.close()

    # Console handler (stderr keeps stdout for build progress)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    console_handler._crossbin = True
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_file),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
        )
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler._crossbin = True
        logger.addHandler(file_handler)
