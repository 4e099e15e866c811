"""Run log for the image optimizer.

Every line has the form ``[YYYY-MM-DD HH:MM:SS] <message>``. The report tool
parses these lines by regex, so message wording is part of the contract.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path

LOGGER_NAME = "imgoptimizer"
LINE_FORMAT = "[%(asctime)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(LOGGER_NAME)


def rotate_log(log_file: Path, now: datetime | None = None) -> Path | None:
    """Move an existing log aside to a timestamp-suffixed sibling."""
    if not log_file.exists():
        return None
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    target = log_file.with_name(f"{log_file.name}.{stamp}")
    index = 1
    while target.exists():
        target = log_file.with_name(f"{log_file.name}.{stamp}({index})")
        index += 1
    log_file.rename(target)
    return target


def setup_logging(log_file: Path, verbose: bool = False, console: bool = True) -> logging.Logger:
    close_logging()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    rotated = rotate_log(log_file)
    level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(LINE_FORMAT, datefmt=DATE_FORMAT)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)
    logger.setLevel(level)
    logger.propagate = False

    # Pillow is chatty at DEBUG
    logging.getLogger("PIL").setLevel(logging.WARNING)

    if rotated is not None:
        logger.info("Rotated previous log to %s", rotated)
    return logger


def close_logging() -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
