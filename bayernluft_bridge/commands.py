"""Command handling: user intents in the state tree -> device requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .adapters import DeviceHttpClient, device_api
from .connectivity import reachable_path
from .core import (
    CommandIntent,
    CommandKind,
    Device,
    StateStore,
    StateValue,
    command_path,
    split_command_path,
)
from .registry import DeviceRegistry
from .telemetry import TelemetryPoller, power_state_path

LOGGER = logging.getLogger(__name__)


class CommandProcessingError(RuntimeError):
    """Raised when an individual intent cannot be carried out."""

    code = "command_failed"

    def __init__(self, message: str, *, intent: Optional[CommandIntent] = None) -> None:
        super().__init__(message)
        self.intent = intent


class GuardViolation(CommandProcessingError):
    """The device's current state does not allow the command."""

    code = "guard_violation"


class UnknownDevice(CommandProcessingError):
    code = "unknown_device"


class UnknownCommand(CommandProcessingError):
    code = "unknown_command"


class InvalidCommandValue(CommandProcessingError):
    code = "invalid_value"


class DeviceRequestFailed(CommandProcessingError):
    code = "request_failed"


UrlBuilder = Callable[[Device, Any], str]


@dataclass(frozen=True)
class CommandSpec:
    """How one command kind is carried out.

    Attributes:
        build_url: Returns the request URL for the device and the coerced value.
        requires_power_off: Only allowed while the device reports ``on = false``.
        numeric: The intent value is a fan speed and must be an integer.
        momentary: Button semantics; the command state resets to False afterwards.
        speed_range: Inclusive bounds for numeric values.
    """

    build_url: UrlBuilder
    requires_power_off: bool = False
    numeric: bool = False
    momentary: bool = True
    speed_range: Tuple[int, int] = (0, 10)


COMMAND_SPECS: Dict[CommandKind, CommandSpec] = {
    CommandKind.SET_FAN_SPEED: CommandSpec(
        device_api.speed_url, numeric=True, momentary=False, speed_range=(1, 10)
    ),
    CommandKind.SET_FAN_SPEED_IN: CommandSpec(
        device_api.speed_in_url, requires_power_off=True, numeric=True, momentary=False
    ),
    CommandKind.SET_FAN_SPEED_OUT: CommandSpec(
        device_api.speed_out_url, requires_power_off=True, numeric=True, momentary=False
    ),
    CommandKind.SET_FAN_SPEED_ANTI_FREEZE: CommandSpec(
        device_api.speed_anti_freeze_url,
        requires_power_off=True,
        numeric=True,
        momentary=False,
    ),
    CommandKind.POWER_ON: CommandSpec(lambda device, _: device_api.power_url(device, True)),
    CommandKind.POWER_OFF: CommandSpec(lambda device, _: device_api.power_url(device, False)),
    CommandKind.AUTO_MODE: CommandSpec(lambda device, _: device_api.speed_url(device, 0)),
    CommandKind.TOGGLE_POWER: CommandSpec(
        lambda device, _: device_api.button_url(device, "power")
    ),
    CommandKind.TIMER: CommandSpec(lambda device, _: device_api.button_url(device, "timer")),
    CommandKind.SYNC_TIME: CommandSpec(lambda device, _: device_api.time_sync_url(device)),
}

COMMAND_NAMES = frozenset(kind.value for kind in COMMAND_SPECS)

# Acknowledged values written for each command state before any user input.
COMMAND_DEFAULTS: Dict[CommandKind, StateValue] = {
    kind: (1 if kind is CommandKind.SET_FAN_SPEED else 0) if spec.numeric else False
    for kind, spec in COMMAND_SPECS.items()
}


def coerce_speed(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not a fan speed")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{value!r} is not a whole number")
        return int(value)
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        number = float(text)
        if not number.is_integer():
            raise ValueError(f"{value!r} is not a whole number") from None
        return int(number)


class CommandDispatcher:
    """Consumes unacknowledged writes to ``{id}.commands.*`` and executes them.

    Each intent ends in exactly one of two ways: the new value is echoed back
    with ``ack=True`` and the device is re-polled, or the failure is logged and
    the intent is dropped as written. Nothing is retried.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        http: DeviceHttpClient,
        store: StateStore,
        poller: TelemetryPoller,
    ) -> None:
        self._registry = registry
        self._http = http
        self._store = store
        self._poller = poller
        self._started = False

    async def start(self) -> None:
        """Write default command states and subscribe one handler per command."""

        if self._started:
            raise RuntimeError("CommandDispatcher already started")

        for device in self._registry.devices():
            for kind in COMMAND_SPECS:
                path = command_path(device.id, kind)
                if await self._store.get(path) is None:
                    await self._store.set(path, COMMAND_DEFAULTS[kind], ack=True)
                self._store.subscribe(path, self._make_handler(device.id, kind))
        self._store.subscribe("", self._reject_unknown_target)
        self._started = True
        LOGGER.info(
            "Command dispatcher subscribed to %d commands on %d devices",
            len(COMMAND_SPECS),
            len(self._registry),
        )

    async def stop(self) -> None:
        """Ignore intents from now on; subscriptions stay with the store."""

        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def accepts(self, path: str) -> bool:
        """True when ``path`` names a command of a registered device."""

        target = split_command_path(path)
        if target is None:
            return False
        device_id, name = target
        return device_id in self._registry and name in COMMAND_NAMES

    async def _reject_unknown_target(self, path: str, entry: Any) -> None:
        target = split_command_path(path)
        if not self._started or target is None or getattr(entry, "ack", False):
            return
        device_id, name = target
        if device_id not in self._registry:
            error: CommandProcessingError = UnknownDevice(
                f"no device registered with id {device_id!r}"
            )
        elif name not in COMMAND_NAMES:
            error = UnknownCommand(f"device {device_id} has no command {name!r}")
        else:
            return
        LOGGER.error("Command %s failed (%s): %s", path, error.code, error)

    def _make_handler(self, device_id: str, kind: CommandKind):
        async def _handler(path: str, entry: Any) -> None:
            if not self._started:
                LOGGER.debug("Dispatcher stopped; dropping intent on %s", path)
                return
            if path != command_path(device_id, kind) or getattr(entry, "ack", False):
                return
            await self.handle_intent(
                CommandIntent(device_id=device_id, kind=kind, value=entry.value, path=path)
            )

        return _handler

    async def handle_intent(self, intent: CommandIntent) -> bool:
        """Execute one intent; returns True when it was acknowledged."""

        LOGGER.debug(
            "Command intent %s=%r for device %s",
            intent.kind.state_name,
            intent.value,
            intent.device_id,
        )
        try:
            device = self._resolve_device(intent)
            echo = await self._execute(device, intent)
        except GuardViolation as exc:
            LOGGER.warning("Command %s rejected: %s", intent.path, exc)
            return False
        except CommandProcessingError as exc:
            LOGGER.error("Command %s failed (%s): %s", intent.path, exc.code, exc)
            return False

        await self._store.set(intent.path, echo, ack=True)
        LOGGER.info(
            "Device %s accepted %s=%r", device.name, intent.kind.state_name, intent.value
        )
        if self._registry.set_reachable(device.id, True) is False:
            LOGGER.info("Device %s is reachable again", device.name)
            await self._store.set(reachable_path(device.id), True, ack=True)
        await self._poller.poll(device)
        return True

    def _resolve_device(self, intent: CommandIntent) -> Device:
        device = self._registry.get(intent.device_id)
        if device is None:
            raise UnknownDevice(
                f"no device registered with id {intent.device_id!r}", intent=intent
            )
        return device

    async def _execute(self, device: Device, intent: CommandIntent) -> StateValue:
        spec = COMMAND_SPECS[intent.kind]

        value: Any = intent.value
        if spec.numeric:
            try:
                value = coerce_speed(intent.value)
            except (TypeError, ValueError) as exc:
                raise InvalidCommandValue(
                    f"{intent.value!r} is not a valid fan speed", intent=intent
                ) from exc
            low, high = spec.speed_range
            if not low <= value <= high:
                raise InvalidCommandValue(
                    f"fan speed {value} is outside {low}..{high}", intent=intent
                )

        if spec.requires_power_off:
            await self._check_powered_off(device, intent)

        url = spec.build_url(device, value)
        if not await self._http.get_ok(url, device):
            raise DeviceRequestFailed(
                f"device {device.name} did not accept {intent.kind.state_name}",
                intent=intent,
            )

        return False if spec.momentary else value

    async def _check_powered_off(self, device: Device, intent: CommandIntent) -> None:
        entry = await self._store.get(power_state_path(device.id))
        is_on = None if entry is None else getattr(entry, "value", entry)
        if is_on is None:
            raise GuardViolation(
                f"power state of {device.name} is unknown; "
                f"{intent.kind.state_name} needs the device switched off",
                intent=intent,
            )
        if is_on:
            raise GuardViolation(
                f"{intent.kind.state_name} can only be changed while "
                f"{device.name} is switched off",
                intent=intent,
            )
