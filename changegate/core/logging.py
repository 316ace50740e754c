"""Logging setup for the service process."""

from __future__ import annotations

import logging

_DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured = False


def configure_logging(level: str | int = logging.INFO, handler: logging.Handler | None = None) -> None:
    """Attach a single formatted handler to the ``changegate`` logger tree.

    Repeated calls only adjust the level so the application factory can be
    invoked many times (tests do) without stacking handlers.
    """

    global _configured

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("changegate")
    logger.setLevel(level)
    if _configured and handler is None:
        return

    if handler is None:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    _configured = True
