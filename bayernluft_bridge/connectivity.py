"""Reachability probing for all registered devices."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, Optional, Tuple

from . import constants
from .adapters import DeviceHttpClient, device_api
from .core import Device, StateStore
from .health import HealthReporter
from .registry import DeviceRegistry

LOGGER = logging.getLogger(__name__)


def reachable_path(device_id: str) -> str:
    return f"{device_id}.info.reachable"


class ConnectivityChecker:
    """Probes each device's base URL and publishes the results.

    Probes run concurrently; a device that times out or refuses the
    connection is marked unreachable without holding up the others. The
    aggregate ``info.connection`` flag is written once per cycle after every
    probe has finished.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        http: DeviceHttpClient,
        store: StateStore,
        *,
        health: Optional[HealthReporter] = None,
    ) -> None:
        self._registry = registry
        self._http = http
        self._store = store
        self._health = health

    async def check(self, device: Device) -> bool:
        reachable = await self._http.get_ok(device_api.probe_url(device), device)
        previous = self._registry.set_reachable(device.id, reachable)

        if previous is reachable:
            LOGGER.debug(
                "Device %s is still %s",
                device.name,
                "reachable" if reachable else "unreachable",
            )
        elif reachable:
            LOGGER.info("Device %s is reachable at %s", device.name, device.base_url)
        else:
            LOGGER.warning(
                "Device %s is not reachable at %s", device.name, device.base_url
            )

        await self._store.set(reachable_path(device.id), reachable, ack=True)
        if self._health is not None:
            failure = self._http.last_failure(device.id)
            await self._health.update_device(
                device.id,
                reachable,
                None if reachable else (failure.value if failure else "probe failed"),
            )
        return reachable

    async def check_all(
        self, devices: Optional[Iterable[Device]] = None
    ) -> Tuple[Dict[str, bool], bool]:
        targets = list(self._registry.devices() if devices is None else devices)

        results = await asyncio.gather(
            *(self.check(device) for device in targets), return_exceptions=True
        )

        per_device: Dict[str, bool] = {}
        for device, result in zip(targets, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                LOGGER.error(
                    "Connectivity check for %s failed: %s",
                    device.name,
                    result,
                    exc_info=result,
                )
                if device.id in self._registry:
                    self._registry.set_reachable(device.id, False)
                per_device[device.id] = False
            else:
                per_device[device.id] = result

        aggregate = any(per_device.values())
        await self._store.set(constants.CONNECTION_STATE, aggregate, ack=True)
        LOGGER.debug(
            "Connectivity cycle finished: %d/%d devices reachable",
            sum(per_device.values()),
            len(per_device),
        )
        return per_device, aggregate
