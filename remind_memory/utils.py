"""Shared helpers."""

from __future__ import annotations

import logging
import sys


def get_logger(name: str = "remind", level: int | str = logging.INFO) -> logging.Logger:
    """Create a consistently-formatted logger.

    Module loggers (``remind.store``, ``remind.agent``, ...) propagate to the
    ``remind`` logger, so configuring that one at startup covers them all.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        formatter = logging.Formatter(
            "[%(asctime)s] %(name)s %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
