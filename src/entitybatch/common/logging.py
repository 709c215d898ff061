"""Log setup for applications embedding entitybatch."""

from __future__ import annotations

import logging
from typing import Final

PACKAGE_LOGGER: Final[str] = "entitybatch"
LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(
    *, level: int = logging.INFO, batch_level: int | None = None, force: bool = False
) -> logging.Logger:
    """Configure the root logger and return the package logger.

    ``batch_level`` tunes the ``entitybatch`` loggers on their own, e.g. DEBUG
    to see phase transitions and executor summaries while drivers stay at
    ``level``. Pass ``force=True`` to reconfigure during tests.
    """

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S", force=force)
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(batch_level if batch_level is not None else logging.NOTSET)
    return logger
