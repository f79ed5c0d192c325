"""Logging setup for the autopilot CLI."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "autopilot"
LEVEL_ENV_VAR = "AUTOPILOT_LOG_LEVEL"
_HANDLER_MARKER = "_autopilot_handler"


def setup_logging(
    *,
    level: str | None = None,
    log_dir: Path | None = None,
    verbose: bool = False,
) -> logging.Logger:
    """Console handler on stderr plus a rotating file under ``log_dir``.

    stdout stays reserved for JSON reports. ``AUTOPILOT_LOG_LEVEL`` wins over
    ``--verbose``. Calling this again replaces the handlers it installed.
    """
    level = os.getenv(LEVEL_ENV_VAR) or level or ("DEBUG" if verbose else "WARNING")
    log_level = getattr(logging, level.upper(), logging.WARNING)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
    )
    setattr(console_handler, _HANDLER_MARKER, True)
    logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "autopilot.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        # File gets everything
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        setattr(file_handler, _HANDLER_MARKER, True)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
