"""
Luna - Logging
===============
Logger factory shared by every Luna module: one stdout handler per named
logger, pipe-separated format, no propagation to the root logger.

Level resolution (first match wins):
  1. ``level`` argument to ``get_logger``
  2. ``settings.LOG_LEVEL`` (e.g. ``"INFO"``)
  3. ``settings.ENV``: ``"dev"`` → DEBUG, ``"prod"`` → WARNING

Stage timings are logged at INFO with a bracketed prefix
(``[INGEST]``, ``[RETRIEVAL]``, ``[TURN]``, ``[STORE]``, ``[LLM]``).

Usage:
    from luna.src.utils.logger import get_logger
    logger = get_logger(__name__)
"""

import logging
import sys

from luna.config.settings import settings

_ENV_LEVEL_MAP = {
    "dev": logging.DEBUG,
    "prod": logging.WARNING,
}
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _default_level() -> int:
    if settings.LOG_LEVEL:
        return logging.getLevelName(settings.LOG_LEVEL.upper())
    return _ENV_LEVEL_MAP.get(settings.ENV, logging.INFO)


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Return the logger *name*, attaching the stdout handler on first use.

    Args:
        name:  Usually ``__name__`` of the calling module.
        level: Explicit override; otherwise resolved from settings.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    resolved_level = level if level is not None else _default_level()
    logger.setLevel(resolved_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(resolved_level)
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
