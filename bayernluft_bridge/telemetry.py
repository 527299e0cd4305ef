"""Telemetry polling: device export -> canonical, typed state writes."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .adapters import DeviceHttpClient, device_api
from .core import Device, StateStore, StateValue

LOGGER = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"

# Grouped export templates nest fields one level deep under these keys.
EXPORT_SECTIONS = ("data", "parameter", "parameters", "states")


class FieldKind(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    FLAG = "flag"


@dataclass(frozen=True)
class TelemetryField:
    source: str
    name: str
    group: str
    kind: FieldKind

    def path(self, device_id: str) -> str:
        return f"{device_id}.{self.group}.{self.name}"


def _field(source: str, group: str, kind: FieldKind, name: Optional[str] = None) -> TelemetryField:
    return TelemetryField(source=source, name=name or source, group=group, kind=kind)


TELEMETRY_FIELDS: Tuple[TelemetryField, ...] = (
    _field("date", "info", FieldKind.STRING),
    _field("time", "info", FieldKind.STRING),
    _field("deviceName", "info", FieldKind.STRING),
    _field("mac", "info", FieldKind.STRING),
    _field("localIp", "info", FieldKind.STRING, name="ip"),
    _field("rssi", "info", FieldKind.INTEGER),
    _field("fwMainController", "info", FieldKind.STRING),
    _field("fwWiFi", "info", FieldKind.STRING),
    _field("temperatureIn", "sensors", FieldKind.FLOAT),
    _field("temperatureOut", "sensors", FieldKind.FLOAT),
    _field("temperatureFresh", "sensors", FieldKind.FLOAT),
    _field("relHumidityIn", "sensors", FieldKind.FLOAT),
    _field("relHumidityOut", "sensors", FieldKind.FLOAT),
    _field("absHumidityIn", "sensors", FieldKind.FLOAT),
    _field("absHumidityOut", "sensors", FieldKind.FLOAT),
    _field("efficiency", "sensors", FieldKind.FLOAT),
    _field("humidityTransport", "sensors", FieldKind.INTEGER),
    _field("fanSpeedIn", "states", FieldKind.INTEGER),
    _field("fanSpeedOut", "states", FieldKind.INTEGER),
    _field("fanSpeedAntiFreeze", "states", FieldKind.INTEGER),
    _field("isSystemOn", "states", FieldKind.FLAG, name="on"),
    _field("isAntiFreezeActive", "states", FieldKind.FLAG),
    _field("isFixedSpeedActive", "states", FieldKind.FLAG),
    _field("isDefrostActive", "states", FieldKind.FLAG),
    _field("isLandlordModeActive", "states", FieldKind.FLAG),
    _field("isCrossVentilationActive", "states", FieldKind.FLAG),
    _field("isTimerActive", "states", FieldKind.FLAG),
)

FIELDS_BY_NAME: Dict[str, TelemetryField] = {field.name: field for field in TELEMETRY_FIELDS}


def power_state_path(device_id: str) -> str:
    return FIELDS_BY_NAME["on"].path(device_id)


class TelemetryValueError(ValueError):
    """Raised when a numeric export field carries something that is not a number."""


def _to_int(raw: Any) -> int:
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw)
    text = str(raw).strip()
    try:
        return int(text)
    except ValueError:
        return int(float(text))


def convert_value(field: TelemetryField, raw: Any) -> StateValue:
    """Convert one raw export value to the field's declared type."""

    if field.kind is FieldKind.STRING:
        return raw if isinstance(raw, str) else str(raw)

    if isinstance(raw, str) and raw.strip() == NOT_AVAILABLE:
        # Reported while the device is powered off.
        if field.kind is FieldKind.FLAG:
            return False
        return 0.0 if field.kind is FieldKind.FLOAT else 0

    try:
        if field.kind is FieldKind.FLOAT:
            value = float(raw) if isinstance(raw, (int, float)) else float(str(raw).strip())
            if math.isnan(value):
                raise ValueError("NaN")
            return value
        number = _to_int(raw)
    except (TypeError, ValueError, OverflowError) as exc:
        raise TelemetryValueError(
            f"{field.source}={raw!r} is not a valid {field.kind.value}"
        ) from exc

    if field.kind is FieldKind.FLAG:
        return number != 0
    return number


def flatten_export(payload: Mapping[str, Any]) -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in payload.items():
        if key in EXPORT_SECTIONS and isinstance(value, Mapping):
            flat.update(value)
        else:
            flat[key] = value
    return flat


def build_observation(payload: Mapping[str, Any]) -> Dict[str, StateValue]:
    """Map an export payload onto canonical field names.

    Fields absent from the payload are absent from the result. Values that
    cannot be converted are logged and left out.
    """

    flat = flatten_export(payload)
    observation: Dict[str, StateValue] = {}
    for field in TELEMETRY_FIELDS:
        if field.source not in flat or flat[field.source] is None:
            continue
        try:
            observation[field.name] = convert_value(field, flat[field.source])
        except TelemetryValueError as exc:
            LOGGER.warning("Dropping telemetry value: %s", exc)
    return observation


class TelemetryPoller:
    """Fetches each device's export and mirrors it into the state store."""

    def __init__(self, http: DeviceHttpClient, store: StateStore) -> None:
        self._http = http
        self._store = store

    async def poll(self, device: Device) -> None:
        if device.reachable is False:
            LOGGER.debug("Skipping telemetry for unreachable device %s", device.name)
            return

        LOGGER.debug("Polling telemetry for device %s", device.name)
        payload = await self._http.get(device_api.export_url(device), device)
        if payload is None:
            return
        if not isinstance(payload, Mapping):
            LOGGER.error(
                "Telemetry export of device %s is not a JSON object (%s)",
                device.name,
                type(payload).__name__,
            )
            return

        observation = build_observation(payload)
        for name, value in observation.items():
            await self._store.set(FIELDS_BY_NAME[name].path(device.id), value, ack=True)

        LOGGER.debug(
            "Device %s telemetry updated (%d fields)", device.name, len(observation)
        )

    async def poll_all(self, devices: Iterable[Device]) -> None:
        targets = list(devices)
        results = await asyncio.gather(
            *(self.poll(device) for device in targets), return_exceptions=True
        )
        for device, result in zip(targets, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                LOGGER.error(
                    "Telemetry poll for %s failed: %s",
                    device.name,
                    result,
                    exc_info=result,
                )
