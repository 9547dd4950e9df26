from __future__ import annotations

import logging
import os

DEBUG_MODE = os.getenv("CC_OVERLAY_DEBUG")
LOGGER_NAME = "cc_overlay"

logger = logging.getLogger(LOGGER_NAME)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[cc-overlay] %(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
logger.setLevel(logging.DEBUG if DEBUG_MODE else logging.INFO)


def get_logger(name: str) -> logging.Logger:
    return logger.getChild(name)


__all__ = ["DEBUG_MODE", "get_logger", "logger"]
