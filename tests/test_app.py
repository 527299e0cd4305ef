"""Tests for BridgeApp lifecycle handling."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import pytest

from bayernluft_bridge.app import AgentState, BridgeApp, ConfigurationError
from bayernluft_bridge.config import BridgeConfig, load_config


def _write_config(tmp_path: Path, *ports: int, extra: str = "") -> BridgeConfig:
    sections = []
    names = ["Garage", "Attic", "Cellar"]
    for name, port in zip(names, ports):
        sections.append(f"[device {name}]\nip = 127.0.0.1\nport = {port}\n")
    config_path = tmp_path / "bayernluft-bridge.cfg"
    config_path.write_text(
        "[logging]\npath =\n\n" + "\n".join(sections) + extra, encoding="utf-8"
    )
    return load_config(config_path)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


class _StubMqtt:
    def __init__(self) -> None:
        self.connected = False
        self.disconnect_calls = 0
        self.published: list[tuple[str, dict]] = []
        self.subscribed: list[str] = []
        self.handler: Optional[object] = None
        self.connect_handlers: list = []
        self.disconnect_handlers: list = []

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnect_calls += 1

    def publish(self, topic, payload, qos=1, retain=False):
        self.published.append((topic, json.loads(payload)))

    def subscribe(self, topic, qos=1):
        self.subscribed.append(topic)

    def unsubscribe(self, topic):
        pass

    def set_message_handler(self, handler):
        self.handler = handler

    def register_connect_handler(self, handler):
        self.connect_handlers.append(handler)

    def register_disconnect_handler(self, handler):
        self.disconnect_handlers.append(handler)


@pytest.mark.asyncio
async def test_start_and_stop_services(tmp_path, device_server):
    app = BridgeApp(_write_config(tmp_path, device_server.port))

    await app.start_services()
    try:
        assert app.state is AgentState.ACTIVE
        assert app.cycles == 1
        assert await app.store.get_value("info.connection") is True
        assert await app.store.get_value("Garage.info.reachable") is True
        assert await app.store.get_value("Garage.states.on") is True
        assert await app.store.get_value("Garage.commands.setFanSpeed") == 1
        snapshot = await app.health.snapshot()
        assert snapshot["status"] == "ok"
    finally:
        await app.stop_services()

    assert app.state is AgentState.STOPPED
    connection = await app.store.get("info.connection")
    assert connection.value is False
    assert connection.ack is True
    assert app._timer_task is None


@pytest.mark.asyncio
async def test_start_without_devices_raises(tmp_path):
    app = BridgeApp(_write_config(tmp_path))

    with pytest.raises(ConfigurationError):
        await app.start_services()

    assert app.state is AgentState.DEGRADED
    assert await app.store.get_value("info.connection") is False


@pytest.mark.asyncio
async def test_unreachable_devices_keep_app_running(tmp_path, unused_tcp_port_factory):
    app = BridgeApp(_write_config(tmp_path, unused_tcp_port_factory()))

    await app.start_services()
    try:
        assert app.state is AgentState.ACTIVE
        assert await app.store.get_value("info.connection") is False
        assert await app.store.get_value("Garage.info.reachable") is False
        assert await app.store.get("Garage.states.on") is None
    finally:
        await app.stop_services()


@pytest.mark.asyncio
async def test_timer_runs_further_cycles(tmp_path, device_server):
    config = _write_config(tmp_path, device_server.port)
    config.polling.interval_seconds = 0
    app = BridgeApp(config)

    await app.start_services()
    try:
        await _wait_for(lambda: app.cycles >= 3)
    finally:
        await app.stop_services()

    cycles = app.cycles
    await asyncio.sleep(0.3)
    assert app.cycles == cycles


@pytest.mark.asyncio
async def test_intent_is_handled_while_running(tmp_path, device_server):
    app = BridgeApp(_write_config(tmp_path, device_server.port))

    await app.start_services()
    try:
        await app.store.set("Garage.commands.setFanSpeed", 5, ack=False)
        await app.store.drain()
        entry = await app.store.get("Garage.commands.setFanSpeed")
        assert entry.value == 5
        assert entry.ack is True
        assert {"speed": "5"} in device_server.commands
    finally:
        await app.stop_services()

    await app.store.set("Garage.commands.timer", True, ack=False)
    await app.store.drain()
    assert {"button": "timer"} not in device_server.commands


@pytest.mark.asyncio
async def test_run_until_stop_requested(tmp_path, device_server):
    app = BridgeApp(_write_config(tmp_path, device_server.port))

    task = asyncio.create_task(app.run())
    await _wait_for(lambda: app.state is AgentState.ACTIVE)

    app.request_stop()
    await asyncio.wait_for(task, timeout=2.0)

    assert app.state is AgentState.STOPPED
    assert await app.store.get_value("info.connection") is False


@pytest.mark.asyncio
async def test_mqtt_mirror_publishes_state(tmp_path, device_server):
    config = _write_config(
        tmp_path, device_server.port, extra="\n[mqtt]\nenabled = true\n"
    )
    mqtt = _StubMqtt()
    app = BridgeApp(config, mqtt_client=mqtt)

    await app.start_services()
    try:
        await app.store.drain()
        assert mqtt.subscribed == ["bayernluft/+/commands/+/set"]
        topics = {topic for topic, _ in mqtt.published}
        assert "bayernluft/info/connection" in topics
        assert "bayernluft/Garage/states/on" in topics

        await mqtt.handler("bayernluft/Garage/commands/powerOff/set", b"true")
        await app.store.drain()
        assert {"power": "off"} in device_server.commands
    finally:
        await app.stop_services()

    assert mqtt.disconnect_calls == 1
    assert mqtt.handler is None


@pytest.mark.asyncio
async def test_mqtt_mirror_drops_unknown_command_targets(tmp_path, device_server):
    config = _write_config(
        tmp_path, device_server.port, extra="\n[mqtt]\nenabled = true\n"
    )
    mqtt = _StubMqtt()
    app = BridgeApp(config, mqtt_client=mqtt)

    await app.start_services()
    try:
        await mqtt.handler("bayernluft/Cellar/commands/powerOn/set", b"true")
        await mqtt.handler("bayernluft/Garage/commands/turbo/set", b"true")
        await app.store.drain()

        assert await app.store.get("Cellar.commands.powerOn") is None
        assert await app.store.get("Garage.commands.turbo") is None
        assert device_server.commands == []
    finally:
        await app.stop_services()


@pytest.mark.asyncio
async def test_mqtt_reconnect_resubscribes_and_republishes(
    tmp_path, device_server, fake_paho
):
    events = fake_paho()
    config = _write_config(
        tmp_path, device_server.port, extra="\n[mqtt]\nenabled = true\n"
    )
    app = BridgeApp(config)

    await app.start_services()
    try:
        fake = events["client"]
        assert len(events["subscribed"]) == 1
        assert app.health._components["mqtt"].healthy is True

        fake.on_disconnect(fake, None, None, 7, None)
        await _wait_for(lambda: app.health._components["mqtt"].healthy is False)
        assert app.health._components["mqtt"].detail == "disconnected (rc=7)"

        published = len(events["published"])
        fake.on_connect(fake, None, None, 0, None)
        await _wait_for(lambda: len(events["subscribed"]) == 2)
        await _wait_for(lambda: app.health._components["mqtt"].healthy is True)

        assert events["subscribed"][-1] == ("bayernluft/+/commands/+/set", 1)
        republished = {topic for topic, *_ in events["published"][published:]}
        assert "bayernluft/Garage/states/on" in republished
        assert "bayernluft/info/connection" in republished
    finally:
        await app.stop_services()

    assert app.state is AgentState.STOPPED
    assert app.health._components["mqtt"].detail == "shutdown"
