"""Health reporting for the bridge process and its devices."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks the bridge's own components and every device's reachability.

    The overall status is ``ok`` while all bridge components are healthy and at
    least one device answers (or no device has been probed yet); a single
    unreachable device only shows up in the ``devices`` block.
    """

    def __init__(self) -> None:
        self._components: Dict[str, ComponentStatus] = {}
        self._devices: Dict[str, ComponentStatus] = {}
        self._agent: Optional[ComponentStatus] = None
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._components[name] = ComponentStatus(name, healthy, detail)

    async def update_device(
        self, device_id: str, reachable: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._devices[device_id] = ComponentStatus(device_id, reachable, detail)

    async def set_agent_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._agent = ComponentStatus("agent", healthy, detail or state)

    async def device(self, device_id: str) -> Optional[Dict[str, object]]:
        async with self._lock:
            status = self._devices.get(device_id)
        return None if status is None else status.as_dict()

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components: List[Dict[str, object]] = [
                status.as_dict() for status in self._components.values()
            ]
            devices: List[Dict[str, object]] = [
                status.as_dict() for status in self._devices.values()
            ]
            agent = self._agent

        reachable = sum(1 for item in devices if item["healthy"])
        degraded = (
            not all(item["healthy"] for item in components)
            or (bool(devices) and reachable == 0)
            or (agent is not None and not agent.healthy)
        )

        payload: Dict[str, object] = {
            "status": "degraded" if degraded else "ok",
            "components": components,
            "devices": {"reachable": reachable, "total": len(devices), "items": devices},
        }
        if agent is not None:
            payload["agentState"] = {
                "state": agent.detail,
                "healthy": agent.healthy,
                "updatedAt": agent.updated_at.isoformat(timespec="seconds"),
            }
        return payload


class HealthServer:
    """aiohttp site with ``/healthz`` and ``/healthz/devices/{device_id}``.

    ``/healthz`` answers 200 while the snapshot is ok and 503 otherwise; the
    per-device route answers 200/503 by reachability and 404 for unknown ids.
    """

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        app = web.Application()
        app.add_routes(
            [
                web.get("/healthz", self._overall),
                web.get("/healthz/devices/{device_id}", self._device),
            ]
        )
        runner = web.AppRunner(app)
        await runner.setup()
        try:
            await web.TCPSite(runner, self._host, self._port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        with contextlib.suppress(Exception):
            await runner.cleanup()

    async def _overall(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    async def _device(self, request: web.Request) -> web.Response:
        device_id = request.match_info["device_id"]
        item = await self._reporter.device(device_id)
        if item is None:
            return web.json_response({"error": f"unknown device {device_id}"}, status=404)
        return web.json_response(item, status=200 if item["healthy"] else 503)
