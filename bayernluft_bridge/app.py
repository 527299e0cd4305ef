"""Main application entry-point for bayernluft-bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from enum import Enum
from typing import Any, Coroutine, Optional, Set

from . import constants
from .adapters import DeviceHttpClient, MQTTClient, MQTTConnectionError
from .commands import CommandDispatcher
from .config import BridgeConfig, load_config
from .connectivity import ConnectivityChecker
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .registry import DeviceRegistry
from .state import InMemoryStateStore, MQTTStateBridge
from .state.mqtt_bridge import connection_will
from .telemetry import TelemetryPoller

LOGGER = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when the configuration leaves nothing to manage."""


class AgentState(str, Enum):
    COLD_START = "cold_start"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class BridgeApp:
    """Coordinates startup, the recurring poll cycle and shutdown.

    A cycle probes every device first and then polls telemetry for every
    device; the next cycle starts one poll interval after the previous one
    finished, so cycles never overlap. Commands are handled independently of
    the cycle, as soon as the state store reports an intent.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        store: Optional[InMemoryStateStore] = None,
        http: Optional[DeviceHttpClient] = None,
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        self._config = config or load_config()
        self._store = store or InMemoryStateStore()
        self._http = http or DeviceHttpClient(self._config.http)
        self._mqtt_client = mqtt_client
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._registry = DeviceRegistry.from_config(self._config.devices)
        self._checker = ConnectivityChecker(
            self._registry, self._http, self._store, health=self._health
        )
        self._poller = TelemetryPoller(self._http, self._store)
        self._dispatcher = CommandDispatcher(
            self._registry, self._http, self._store, self._poller
        )
        self._mqtt_bridge: Optional[MQTTStateBridge] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._timer_task: Optional[asyncio.Task[None]] = None
        self._background: Set[asyncio.Task[None]] = set()
        self._state = AgentState.COLD_START
        self._cycles = 0

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    @property
    def store(self) -> InMemoryStateStore:
        return self._store

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def cycles(self) -> int:
        return self._cycles

    @classmethod
    def start(cls, config: Optional[BridgeConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("%s received shutdown signal", constants.APP_NAME)
        except ConfigurationError as exc:
            LOGGER.error("%s", exc)

    async def run(self) -> None:
        """Start services and keep cycling until :meth:`request_stop` is called."""

        LOGGER.info("%s starting with config: %s", constants.APP_NAME, self._config.path)
        await self.start_services()
        try:
            assert self._stop_event is not None
            await self._stop_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("%s received shutdown signal", constants.APP_NAME)
            raise
        finally:
            await self.stop_services()

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def start_services(self) -> None:
        self._stop_event = asyncio.Event()
        await self._transition_state(AgentState.COLD_START, detail="initialising")

        await self._store.set(constants.CONNECTION_STATE, False, ack=True)

        if len(self._registry) == 0:
            await self._transition_state(AgentState.DEGRADED, detail="no devices")
            raise ConfigurationError("No usable devices configured; nothing to do")

        await self._start_mqtt()
        await self._start_health_server()
        await self._dispatcher.start()

        await self.run_cycle()

        self._timer_task = asyncio.create_task(self._timer_loop())
        await self._transition_state(AgentState.ACTIVE, detail="polling")

    async def run_cycle(self) -> bool:
        """Run one connectivity pass followed by one telemetry pass."""

        _, aggregate = await self._checker.check_all()
        await self._poller.poll_all(self._registry.devices())
        self._cycles += 1
        return aggregate

    async def stop_services(self) -> None:
        await self._transition_state(AgentState.STOPPING, detail="shutdown requested")

        await self._store.set(constants.CONNECTION_STATE, False, ack=True)

        if self._timer_task is not None:
            self._timer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
            self._background.clear()

        await self._dispatcher.stop()

        if self._mqtt_bridge is not None:
            await self._mqtt_bridge.stop()
            self._mqtt_bridge = None

        if self._mqtt_client is not None:
            try:
                await self._mqtt_client.disconnect()
            except Exception:  # pragma: no cover
                LOGGER.debug("Error disconnecting from MQTT broker", exc_info=True)
            self._mqtt_client = None
            await self._health.update("mqtt", False, "shutdown")

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        await self._http.aclose()

        if self._stop_event is not None:
            self._stop_event.set()
        await self._transition_state(AgentState.STOPPED, detail="stopped")

    async def _timer_loop(self) -> None:
        interval = max(float(self._config.poll_interval_seconds), 0.1)
        assert self._stop_event is not None

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover
                LOGGER.exception("Poll cycle failed")

    async def _start_mqtt(self) -> None:
        mqtt_config = self._config.mqtt
        if not mqtt_config.enabled:
            return

        if self._mqtt_client is None:
            client_id = mqtt_config.client_id or f"{constants.APP_NAME}-{os.getpid()}"
            self._mqtt_client = MQTTClient(
                mqtt_config,
                client_id=client_id,
                will=connection_will(mqtt_config.base_topic, constants.CONNECTION_STATE),
            )

        try:
            await self._mqtt_client.connect()
        except MQTTConnectionError as exc:
            LOGGER.error("MQTT connection failed: %s", exc)
            await self._health.update("mqtt", False, str(exc))
            self._mqtt_client = None
            return

        self._mqtt_bridge = MQTTStateBridge(
            self._store,
            self._mqtt_client,
            base_topic=mqtt_config.base_topic,
            command_filter=self._dispatcher.accepts,
        )
        await self._mqtt_bridge.start()
        await self._mqtt_bridge.publish_snapshot()
        await self._health.update("mqtt", True, None)

        # Only fire for later sessions; the first one is handled above.
        self._mqtt_client.register_connect_handler(self._on_mqtt_connected)
        self._mqtt_client.register_disconnect_handler(self._on_mqtt_disconnected)

    def _on_mqtt_connected(self, rc: int) -> None:
        if self._mqtt_bridge is None or self._stopping():
            return
        self._spawn_background(self._resume_mqtt())

    def _on_mqtt_disconnected(self, rc: int) -> None:
        if self._stopping():
            return
        LOGGER.warning("MQTT session lost (rc=%s); waiting for reconnect", rc)
        self._spawn_background(
            self._health.update("mqtt", False, f"disconnected (rc={rc})")
        )

    async def _resume_mqtt(self) -> None:
        bridge = self._mqtt_bridge
        if bridge is None:
            return
        LOGGER.info("MQTT session re-established; republishing state")
        try:
            bridge.resubscribe()
        except MQTTConnectionError as exc:
            LOGGER.error("MQTT resubscribe failed: %s", exc)
            await self._health.update("mqtt", False, str(exc))
            return
        await bridge.publish_snapshot()
        await self._health.update("mqtt", True, None)

    def _stopping(self) -> bool:
        return self._state in (AgentState.STOPPING, AgentState.STOPPED)

    def _spawn_background(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _transition_state(
        self, state: AgentState, *, detail: Optional[str] = None
    ) -> None:
        previous = self._state
        self._state = state
        if previous != state:
            LOGGER.info(
                "Bridge state transition %s -> %s (%s)",
                previous.value,
                state.value,
                detail or state.value,
            )
        await self._health.set_agent_state(
            state.value,
            healthy=state == AgentState.ACTIVE,
            detail=detail or state.value,
        )
