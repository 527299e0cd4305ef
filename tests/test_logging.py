import logging
from pathlib import Path

import pytest

from bayernluft_bridge.logging import NETWORK_LOGGERS, configure_logging


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers and type(handler) in (
            logging.StreamHandler,
            logging.FileHandler,
        ):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)
    logging.captureWarnings(False)


def test_configure_logging_writes_file(tmp_path: Path, restore_root_logging) -> None:
    log_path = tmp_path / "logs" / "bridge.log"

    configure_logging("debug", log_path=log_path)
    logging.getLogger("bayernluft_bridge.test").info("Device %s is reachable", "Garage")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert logging.getLogger().level == logging.DEBUG
    assert "| INFO | bayernluft_bridge.test | Device Garage is reachable" in (
        log_path.read_text(encoding="utf-8")
    )
    assert logging.getLogger("aiohttp.access").level == logging.WARNING


def test_configure_logging_network_flag(restore_root_logging) -> None:
    configure_logging("INFO", log_network=True)

    assert logging.getLogger("paho").level == logging.NOTSET
