"""Logging setup for the bridge process."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Chatty below WARNING; every request and keepalive would be logged otherwise.
NETWORK_LOGGERS = ("aiohttp.access", "aiohttp.client", "aiohttp.server", "paho")


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Replace the root handlers with console (and optionally file) output.

    ``log_network`` leaves the aiohttp and paho loggers at the root level,
    which is useful when a controller or the broker misbehaves.
    """

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.captureWarnings(True)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT
    )

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(
            logging.NOTSET if log_network else logging.WARNING
        )
