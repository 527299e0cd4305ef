"""Device registry: validates configured devices and assigns stable ids."""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from .config import DeviceConfig
from .core import Device

LOGGER = logging.getLogger(__name__)

TRANSLITERATIONS: Mapping[str, str] = {
    "ß": "ss",
    "ä": "ae",
    "Ä": "Ae",
    "ö": "oe",
    "Ö": "Oe",
    "ü": "ue",
    "Ü": "Ue",
}

# ASCII only; ``\w`` would let arbitrary unicode letters through.
_ILLEGAL_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")

MAX_PORT = 65535


def derive_device_id(name: str) -> str:
    """Turn a configured device name into a state-tree safe identifier.

    Known umlauts are transliterated first; every remaining character outside
    ``[A-Za-z0-9-_]`` becomes ``_``, one underscore per character.
    """

    folded = "".join(TRANSLITERATIONS.get(char, char) for char in name)
    return _ILLEGAL_ID_CHARS.sub("_", folded)


def _validate(entry: DeviceConfig) -> Optional[str]:
    if not entry.name or not entry.name.strip():
        return "device name is empty"
    if not entry.ip or not entry.ip.strip():
        return "device IP is empty"
    if entry.port is None or not 0 <= entry.port <= MAX_PORT:
        return f"port {entry.port!r} is outside 0-{MAX_PORT}"
    return None


class DeviceRegistry:
    """Owns the set of managed devices for the lifetime of the process."""

    def __init__(self, devices: Optional[Iterable[Device]] = None) -> None:
        self._devices: Dict[str, Device] = {}
        for device in devices or ():
            self._devices[device.id] = device

    @classmethod
    def from_config(cls, entries: Iterable[DeviceConfig]) -> "DeviceRegistry":
        return cls(normalize(entries).values())

    def get(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    def devices(self) -> List[Device]:
        return list(self._devices.values())

    def set_reachable(self, device_id: str, reachable: bool) -> Optional[bool]:
        """Record a reachability result and return the previous reachability."""

        device = self._devices.get(device_id)
        if device is None:
            raise KeyError(device_id)
        previous = device.reachable
        device.reachable = reachable
        return previous

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __iter__(self) -> Iterator[Device]:
        return iter(self.devices())

    def __len__(self) -> int:
        return len(self._devices)


def normalize(entries: Iterable[DeviceConfig]) -> Dict[str, Device]:
    """Validate raw device entries and key the survivors by derived id.

    Disabled entries are skipped quietly. Entries without a name, without an
    IP or with an out-of-range port are logged and left out. When two names
    fold onto the same id the later entry replaces the earlier one.
    """

    devices: Dict[str, Device] = {}

    for index, entry in enumerate(entries):
        if not entry.enabled:
            LOGGER.debug("Skipping disabled device %r", entry.name)
            continue

        problem = _validate(entry)
        if problem is not None:
            LOGGER.error(
                "Ignoring device entry #%d (%r): %s", index, entry.name, problem
            )
            continue

        name = entry.name.strip()
        device_id = derive_device_id(name)
        previous = devices.get(device_id)
        if previous is not None:
            LOGGER.warning(
                "Devices %r and %r share id %r; keeping the later entry",
                previous.name,
                name,
                device_id,
            )

        devices[device_id] = Device(
            id=device_id,
            name=name,
            host=entry.ip.strip(),
            port=entry.port,
            enabled=True,
        )

    return devices
