"""Constants used across the bayernluft-bridge package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "bayernluft-bridge"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_DEVICE_PORT = 80

DEFAULT_POLL_INTERVAL_SECONDS = 60
MIN_POLL_INTERVAL_SECONDS = 5
MAX_POLL_INTERVAL_SECONDS = 3600

DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_BASE_TOPIC = "bayernluft"

DEVICE_SECTION_PREFIX = "device "

CONNECTION_STATE = "info.connection"
