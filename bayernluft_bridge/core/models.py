"""Domain models for devices and commands."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple, Union

StateValue = Union[str, int, float, bool, None]


@dataclass(slots=True)
class Device:
    """A registered ventilation controller.

    Identity fields are fixed at registration; only ``reachable`` changes,
    through :meth:`DeviceRegistry.set_reachable`.
    """

    id: str
    name: str
    host: str
    port: int
    enabled: bool = True
    reachable: Optional[bool] = None

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class CommandKind(str, Enum):
    """Commands a user can issue through the ``{id}.commands.*`` states."""

    SET_FAN_SPEED = "setFanSpeed"
    SET_FAN_SPEED_IN = "setFanSpeedIn"
    SET_FAN_SPEED_OUT = "setFanSpeedOut"
    SET_FAN_SPEED_ANTI_FREEZE = "setFanSpeedAntiFreeze"
    POWER_ON = "powerOn"
    POWER_OFF = "powerOff"
    AUTO_MODE = "autoMode"
    TOGGLE_POWER = "togglePower"
    TIMER = "timer"
    SYNC_TIME = "syncTime"

    @property
    def state_name(self) -> str:
        return self.value


@dataclass(slots=True)
class CommandIntent:
    device_id: str
    kind: CommandKind
    value: Any
    path: str


def command_path(device_id: str, kind: CommandKind) -> str:
    return f"{device_id}.commands.{kind.state_name}"


def split_command_path(path: str) -> Optional[Tuple[str, str]]:
    """Return ``(device_id, command_name)`` for ``{id}.commands.{name}`` paths."""

    parts = path.split(".")
    if len(parts) != 3 or parts[1] != "commands" or not parts[0] or not parts[2]:
        return None
    return parts[0], parts[2]
