"""
Sage - Logging
===============
Pre-configured logger factory shared by every Sage module.

Logging verbosity is driven by ``settings.ENV``:
  • ``"dev"``  → DEBUG level  (per-attempt LLM telemetry, cache hits)
  • ``"prod"`` → WARNING level (fallbacks, cooldowns, failures only)

Components tag their lines with a bracketed prefix (``[LLM]``,
``[GATE]``, ``[CACHE]``, ``[VECTOR]``, ``[RAG]``) so a single request
can be followed through the serving path with ``grep``.

Usage:
    from sage.src.utils.logger import get_logger
    logger = get_logger(__name__)
    logger.info("[RAG] %d chunk(s) survived filtering", n)
"""

import logging
import sys

from sage.config.settings import settings

_ENV_LEVEL_MAP = {
    "dev": logging.DEBUG,
    "prod": logging.WARNING,
}
_DEFAULT_LEVEL = _ENV_LEVEL_MAP.get(settings.ENV, logging.INFO)


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Create and return a named logger with the standard Sage formatter.

    Args:
        name:  Typically ``__name__`` of the calling module.
        level: Explicit logging level override.
               If *None*, the level is derived from ``settings.ENV``.

    Returns:
        A configured ``logging.Logger`` instance.
    """
    resolved_level = level if level is not None else _DEFAULT_LEVEL
    logger = logging.getLogger(name)

    # Handlers are attached once per logger name
    if not logger.handlers:
        logger.setLevel(resolved_level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(resolved_level)
        console_handler.setFormatter(logging.Formatter(fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(console_handler)

        logger.propagate = False

    return logger
