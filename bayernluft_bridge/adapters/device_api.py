"""URL construction for the controller's HTTP interface."""

from __future__ import annotations

from typing import Mapping, Optional
from urllib.parse import urlencode

from ..core import Device

EXPORT_PATH = "/index.html"
EXPORT_PARAMS: Mapping[str, str] = {"export": "iobroker", "decimal": "point"}


def build_url(
    device: Device, path: str = "/", params: Optional[Mapping[str, object]] = None
) -> str:
    if not path.startswith("/"):
        path = "/" + path
    url = f"{device.base_url}{path}"
    if params:
        url = f"{url}?{urlencode({key: str(value) for key, value in params.items()})}"
    return url


def probe_url(device: Device) -> str:
    return build_url(device, "/")


def export_url(device: Device) -> str:
    return build_url(device, EXPORT_PATH, EXPORT_PARAMS)


def speed_url(device: Device, speed: int) -> str:
    return build_url(device, "/", {"speed": speed})


def speed_in_url(device: Device, speed: int) -> str:
    return build_url(device, "/", {"speedIn": speed})


def speed_out_url(device: Device, speed: int) -> str:
    return build_url(device, "/", {"speedOut": speed})


def speed_anti_freeze_url(device: Device, speed: int) -> str:
    return build_url(device, "/", {"speedFrM": speed})


def power_url(device: Device, on: bool) -> str:
    return build_url(device, "/", {"power": "on" if on else "off"})


def button_url(device: Device, button: str) -> str:
    return build_url(device, "/", {"button": button})


def time_sync_url(device: Device) -> str:
    return build_url(device, EXPORT_PATH, {"TimeSync": 1})
