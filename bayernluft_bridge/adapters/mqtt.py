"""paho-mqtt wrapper used by the state mirror.

paho runs its network loop in a background thread; every callback that
touches asyncio objects is marshalled back onto the event loop that called
:meth:`MQTTClient.connect`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import paho.mqtt.client as mqtt

from ..config import MqttConfig

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
StatusHandler = Callable[[int], None]


class MQTTConnectionError(RuntimeError):
    """Raised when the broker cannot be reached or rejects a request."""


def _reason_value(reason_code: Any) -> int:
    # paho 2.x hands out ReasonCode objects; plain ints still show up in tests.
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class MQTTClient:
    """Async facade over ``paho.mqtt.client.Client`` (callback API v2).

    When ``will`` is given as ``(topic, payload)`` the broker publishes it
    retained if the bridge drops off without disconnecting, which is how
    subscribers learn that ``info.connection`` is no longer being maintained.
    """

    def __init__(
        self,
        config: MqttConfig,
        *,
        client_id: str,
        keepalive: int = 60,
        will: Optional[Tuple[str, bytes]] = None,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = keepalive
        self.will = will

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Event] = None
        self._gone: Optional[asyncio.Event] = None
        self._connack_rc: Optional[int] = None
        self._online = False
        self._message_handler: Optional[MessageHandler] = None
        self._on_up: List[StatusHandler] = []
        self._on_down: List[StatusHandler] = []

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        client.enable_logger(LOGGER)
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        if self.will is not None:
            topic, payload = self.will
            client.will_set(topic, payload, qos=1, retain=True)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    async def connect(self, timeout: float = 30.0) -> None:
        """Open the broker session; raises :class:`MQTTConnectionError` on failure."""

        self._loop = asyncio.get_running_loop()
        self._connack = asyncio.Event()
        self._gone = asyncio.Event()
        self._connack_rc = None

        client = self._client = self._build_client()
        host, port = self.config.broker_host, self.config.broker_port
        LOGGER.info("Connecting to MQTT broker %s:%s as %s", host, port, self.client_id)
        client.connect_async(host, port, self.keepalive)
        client.loop_start()

        try:
            await asyncio.wait_for(self._connack.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            raise MQTTConnectionError(
                f"no answer from MQTT broker {host}:{port} within {timeout:.0f}s"
            ) from exc

        if self._connack_rc != 0:
            client.loop_stop()
            raise MQTTConnectionError(
                f"MQTT broker {host}:{port} refused the session (rc={self._connack_rc})"
            )

    async def disconnect(self, timeout: float = 5.0) -> None:
        client = self._client
        if client is None:
            return

        client.disconnect()
        try:
            if self._gone is not None:
                await asyncio.wait_for(self._gone.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("MQTT broker did not confirm disconnect within %.1fs", timeout)
        finally:
            client.loop_stop()
            self._client = None
            self._online = False

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        info = self._require_client().publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"publish to {topic} failed (rc={info.rc})")

    def subscribe(self, topic: str, qos: int = 1) -> None:
        rc, _ = self._require_client().subscribe(topic, qos=qos)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"subscribe to {topic} failed (rc={rc})")

    def unsubscribe(self, topic: str) -> None:
        rc, _ = self._require_client().unsubscribe(topic)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"unsubscribe from {topic} failed (rc={rc})")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_connect_handler(self, handler: StatusHandler) -> None:
        self._on_up.append(handler)

    def register_disconnect_handler(self, handler: StatusHandler) -> None:
        self._on_down.append(handler)

    def is_connected(self) -> bool:
        return self._online

    def _require_client(self) -> mqtt.Client:
        if self._client is None:
            raise RuntimeError("MQTT client not connected")
        return self._client

    # paho callbacks, invoked on the network thread
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        self._connack_rc = rc
        self._online = rc == 0
        if self._online:
            LOGGER.info("MQTT session established")
            self._notify(self._on_up, rc)
        else:
            LOGGER.error("MQTT broker refused the session (rc=%s)", rc)
        self._signal(self._connack)

    def _on_disconnect(
        self, client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        self._online = False
        LOGGER.info("MQTT session closed (rc=%s)", rc)
        self._signal(self._gone)
        self._notify(self._on_down, rc)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        handler, loop = self._message_handler, self._loop
        if handler is None or loop is None:
            return
        try:
            result = handler(message.topic, message.payload)
            if asyncio.iscoroutine(result):
                asyncio.run_coroutine_threadsafe(result, loop)
        except Exception:  # pragma: no cover
            LOGGER.exception("Handling MQTT message on %s failed", message.topic)

    def _notify(self, handlers: List[StatusHandler], rc: int) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        for handler in handlers:
            loop.call_soon_threadsafe(handler, rc)

    def _signal(self, event: Optional[asyncio.Event]) -> None:
        if event is None:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            event.set()
            return
        try:
            on_loop = asyncio.get_running_loop() is loop
        except RuntimeError:
            on_loop = False
        if on_loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)
