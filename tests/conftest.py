import asyncio
from types import SimpleNamespace
from typing import Any, Optional

import paho.mqtt.client as mqtt
import pytest
import pytest_asyncio
from aiohttp import web

from bayernluft_bridge.adapters import DeviceHttpClient
from bayernluft_bridge.config import HttpConfig
from bayernluft_bridge.core import Device
from bayernluft_bridge.state import InMemoryStateStore

DEFAULT_EXPORT = {
    "date": "19.10.2026",
    "time": "12:00:00",
    "deviceName": "Garage",
    "mac": "AA:BB:CC:DD:EE:FF",
    "localIp": "192.168.1.50",
    "rssi": "-61",
    "fwMainController": "WS32234601",
    "fwWiFi": "WS32240401",
    "temperatureIn": "21.5",
    "temperatureOut": "20.1",
    "temperatureFresh": "8.3",
    "relHumidityIn": "48.0",
    "relHumidityOut": "52.5",
    "absHumidityIn": "9.1",
    "absHumidityOut": "8.7",
    "efficiency": "81.0",
    "humidityTransport": "12",
    "fanSpeedIn": "3",
    "fanSpeedOut": "3",
    "fanSpeedAntiFreeze": "0",
    "isSystemOn": "1",
    "isAntiFreezeActive": "0",
    "isFixedSpeedActive": "0",
    "isDefrostActive": "0",
    "isLandlordModeActive": "0",
    "isCrossVentilationActive": "1",
    "isTimerActive": "0",
}


class FakeDevice:
    """Controller double serving the probe, export and command endpoints."""

    def __init__(self, port: int) -> None:
        self.port = port
        self.requests: list[tuple[str, dict[str, str]]] = []
        self.export: Any = dict(DEFAULT_EXPORT)
        self.export_body: Optional[str] = None
        self.probe_status = 200
        self.command_status = 200
        self.delay = 0.0

    def make_url(self, path: str = "/") -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"http://127.0.0.1:{self.port}{path}"

    def as_device(self, name: str = "Garage", device_id: Optional[str] = None) -> Device:
        return Device(
            id=device_id or name, name=name, host="127.0.0.1", port=self.port
        )

    @property
    def commands(self) -> list[dict[str, str]]:
        return [
            query
            for _, query in self.requests
            if query and "export" not in query
        ]

    @property
    def export_requests(self) -> int:
        return sum(1 for _, query in self.requests if "export" in query)

    async def handle_root(self, request: web.Request) -> web.Response:
        query = dict(request.query)
        self.requests.append((request.path, query))
        if self.delay:
            await asyncio.sleep(self.delay)
        if not query:
            return web.Response(status=self.probe_status, text="<html></html>")
        return web.Response(status=self.command_status, text="OK")

    async def handle_index(self, request: web.Request) -> web.Response:
        query = dict(request.query)
        self.requests.append((request.path, query))
        if self.delay:
            await asyncio.sleep(self.delay)
        if "export" in query:
            if self.export_body is not None:
                return web.Response(text=self.export_body, content_type="text/html")
            return web.json_response(self.export)
        return web.Response(status=self.command_status, text="OK")


class FakeMqttClient:
    """Stand-in for paho's client speaking the version 2 callback API."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        events: dict,
        *,
        rc_connect: int = 0,
        rc_disconnect: int = 0,
        publish_rc: int = mqtt.MQTT_ERR_SUCCESS,
        subscribe_rc: int = mqtt.MQTT_ERR_SUCCESS,
    ):
        self._loop = loop
        self._events = events
        self._rc_connect = rc_connect
        self._rc_disconnect = rc_disconnect
        self._publish_rc = publish_rc
        self._subscribe_rc = subscribe_rc

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

    def enable_logger(self, logger):
        self._events.setdefault("logger_enabled", True)

    def username_pw_set(self, username, password=None):
        self._events["auth"] = (username, password)

    def will_set(self, topic, payload=None, qos=0, retain=False):
        self._events["will"] = (topic, payload, qos, retain)

    def connect_async(self, host, port, keepalive):
        self._events["connect_args"] = (host, port, keepalive)
        if self.on_connect:
            self._loop.call_soon(
                self.on_connect, self, None, None, self._rc_connect, None
            )

    def loop_start(self):
        self._events["loop_start"] = self._events.get("loop_start", 0) + 1

    def loop_stop(self):
        self._events["loop_stop"] = self._events.get("loop_stop", 0) + 1

    def disconnect(self):
        self._events["disconnect_called"] = True
        if self.on_disconnect:
            self._loop.call_soon(
                self.on_disconnect, self, None, None, self._rc_disconnect, None
            )

    def publish(self, topic, payload, qos=0, retain=False):
        self._events.setdefault("published", []).append((topic, payload, qos, retain))
        return SimpleNamespace(rc=self._publish_rc)

    def subscribe(self, topic, qos=0):
        self._events.setdefault("subscribed", []).append((topic, qos))
        return self._subscribe_rc, 1

    def unsubscribe(self, topic):
        self._events.setdefault("unsubscribed", []).append(topic)
        return self._subscribe_rc, 2


@pytest_asyncio.fixture
async def fake_paho(monkeypatch):
    """Replace paho's client class; call the fixture to install it with options.

    The returned dict records every call, and ``events["client"]`` holds the
    most recently built fake.
    """

    loop = asyncio.get_running_loop()
    events: dict = {}

    def install(**options) -> dict:
        def factory(*args, **kwargs):
            events["client_args"] = (args, kwargs)
            client = events["client"] = FakeMqttClient(loop, events, **options)
            return client

        monkeypatch.setattr("bayernluft_bridge.adapters.mqtt.mqtt.Client", factory)
        return events

    return install


async def _serve(port: int):
    fake = FakeDevice(port)
    app = web.Application()
    app.router.add_get("/", fake.handle_root)
    app.router.add_get("/index.html", fake.handle_index)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    return fake, runner


@pytest_asyncio.fixture
async def device_server(unused_tcp_port_factory):
    fake, runner = await _serve(unused_tcp_port_factory())
    try:
        yield fake
    finally:
        await runner.cleanup()


@pytest_asyncio.fixture
async def second_device_server(unused_tcp_port_factory):
    fake, runner = await _serve(unused_tcp_port_factory())
    try:
        yield fake
    finally:
        await runner.cleanup()


@pytest_asyncio.fixture
async def http_client():
    client = DeviceHttpClient(HttpConfig(request_timeout_seconds=2.0))
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()
