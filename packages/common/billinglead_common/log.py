"""Logging setup shared by the CLI and the admin API."""

import logging
import os
from typing import Optional, Union


def configure_logging(level: Optional[Union[int, str]] = None, force: bool = False) -> None:
    """Initialise the root logger once.

    ``level`` falls back to the ``LOG_LEVEL`` environment variable, then INFO.
    Pass ``force=True`` to reconfigure an already configured root logger.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL") or logging.INFO
    if isinstance(level, str):
        level = level.upper()

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        force=force,
    )
