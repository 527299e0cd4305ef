"""Configuration loader for bayernluft-bridge."""

from __future__ import annotations

import logging
from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from . import constants

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DeviceConfig:
    """Raw device descriptor as configured; validated by the registry."""

    name: str
    ip: str = ""
    port: Optional[int] = constants.DEFAULT_DEVICE_PORT
    enabled: bool = True


@dataclass(slots=True)
class PollingConfig:
    interval_seconds: int = constants.DEFAULT_POLL_INTERVAL_SECONDS


@dataclass(slots=True)
class HttpConfig:
    request_timeout_seconds: float = constants.DEFAULT_REQUEST_TIMEOUT_SECONDS


@dataclass(slots=True)
class MqttConfig:
    enabled: bool = False
    broker_host: str = constants.DEFAULT_BROKER_HOST
    broker_port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    base_topic: str = constants.DEFAULT_BASE_TOPIC
    client_id: Optional[str] = None


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class BridgeConfig:
    polling: PollingConfig
    http: HttpConfig
    mqtt: MqttConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path
    devices: List[DeviceConfig] = field(default_factory=list)

    @property
    def poll_interval_seconds(self) -> int:
        return self.polling.interval_seconds


def clamp_poll_interval(value: int) -> int:
    """Keep the poll interval inside the supported [5, 3600] second window."""

    return max(
        constants.MIN_POLL_INTERVAL_SECONDS,
        min(constants.MAX_POLL_INTERVAL_SECONDS, value),
    )


def _parse_port(section: SectionProxy) -> Optional[int]:
    raw_port = section.get("port", fallback=str(constants.DEFAULT_DEVICE_PORT)).strip()
    if not raw_port:
        return None
    try:
        return int(raw_port)
    except ValueError:
        LOGGER.debug("Port %r of [%s] is not an integer", raw_port, section.name)
        return None


def _parse_devices(parser: ConfigParser) -> List[DeviceConfig]:
    devices: List[DeviceConfig] = []
    for section_name in parser.sections():
        if not section_name.startswith(constants.DEVICE_SECTION_PREFIX):
            continue
        section = parser[section_name]
        name = section.get(
            "name", fallback=section_name[len(constants.DEVICE_SECTION_PREFIX) :]
        ).strip()
        try:
            enabled = section.getboolean("enabled", fallback=True)
        except ValueError:
            LOGGER.warning(
                "Device [%s] has invalid enabled value %r; treating it as disabled",
                section_name,
                section.get("enabled"),
            )
            enabled = False
        devices.append(
            DeviceConfig(
                name=name,
                ip=section.get("ip", fallback="").strip(),
                port=_parse_port(section),
                enabled=enabled,
            )
        )
    return devices


def load_config(path: Optional[Path] = None) -> BridgeConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "polling": {
                "interval_seconds": str(constants.DEFAULT_POLL_INTERVAL_SECONDS),
            },
            "http": {
                "request_timeout_seconds": str(
                    constants.DEFAULT_REQUEST_TIMEOUT_SECONDS
                ),
            },
            "mqtt": {
                "enabled": "false",
                "broker_host": constants.DEFAULT_BROKER_HOST,
                "broker_port": str(constants.DEFAULT_BROKER_PORT),
                "base_topic": constants.DEFAULT_BASE_TOPIC,
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path, encoding="utf-8")

    try:
        interval_value = parser.getint(
            "polling",
            "interval_seconds",
            fallback=constants.DEFAULT_POLL_INTERVAL_SECONDS,
        )
    except ValueError:
        interval_value = constants.DEFAULT_POLL_INTERVAL_SECONDS

    polling = PollingConfig(interval_seconds=clamp_poll_interval(interval_value))

    http = HttpConfig(
        request_timeout_seconds=max(
            0.1,
            parser.getfloat(
                "http",
                "request_timeout_seconds",
                fallback=constants.DEFAULT_REQUEST_TIMEOUT_SECONDS,
            ),
        ),
    )

    mqtt = MqttConfig(
        enabled=parser.getboolean("mqtt", "enabled", fallback=False),
        broker_host=parser.get("mqtt", "broker_host"),
        broker_port=parser.getint(
            "mqtt", "broker_port", fallback=constants.DEFAULT_BROKER_PORT
        ),
        username=parser.get("mqtt", "username", fallback=None),
        password=parser.get("mqtt", "password", fallback=None),
        base_topic=parser.get("mqtt", "base_topic").strip("/")
        or constants.DEFAULT_BASE_TOPIC,
        client_id=parser.get("mqtt", "client_id", fallback=None),
    )

    logging_path = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(logging_path).expanduser() if logging_path else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return BridgeConfig(
        polling=polling,
        http=http,
        mqtt=mqtt,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
        devices=_parse_devices(parser),
    )
