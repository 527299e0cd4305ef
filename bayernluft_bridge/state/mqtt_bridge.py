"""Mirror of the state tree onto an MQTT broker.

Every write is published retained under ``{base_topic}/{path}`` (dots become
slashes). Commands arrive on ``{base_topic}/{device}/commands/{name}/set``
and are written back into the store as unacknowledged intents.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional, Protocol, Tuple

from .store import InMemoryStateStore, StateEntry

LOGGER = logging.getLogger(__name__)

SET_SUFFIX = "/set"


class MQTTStateClient(Protocol):
    def subscribe(self, topic: str, qos: int = 1) -> None: ...

    def unsubscribe(self, topic: str) -> None: ...

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None: ...

    def set_message_handler(self, handler): ...


def path_to_topic(base_topic: str, path: str) -> str:
    return f"{base_topic}/{path.replace('.', '/')}"


def topic_to_path(base_topic: str, topic: str) -> Optional[str]:
    prefix = f"{base_topic}/"
    if not topic.startswith(prefix) or not topic.endswith(SET_SUFFIX):
        return None
    relative = topic[len(prefix) : -len(SET_SUFFIX)]
    if not relative:
        return None
    return relative.replace("/", ".")


def connection_will(base_topic: str, connection_path: str) -> Tuple[str, bytes]:
    """Retained message the broker sends on our behalf if the bridge vanishes."""

    payload = json.dumps({"val": False, "ack": True}).encode("utf-8")
    return path_to_topic(base_topic.strip("/"), connection_path), payload


def decode_command_payload(payload: bytes) -> Any:
    """Decode an inbound value: JSON when possible, otherwise plain text.

    ``{"val": ...}`` envelopes, as published by the bridge itself, are unwrapped.
    """

    text = payload.decode("utf-8", errors="replace").strip()
    try:
        value = json.loads(text)
    except ValueError:
        return text
    if isinstance(value, dict) and "val" in value:
        return value["val"]
    return value


class MQTTStateBridge:
    """Publishes store writes and turns inbound command topics into intents.

    ``command_filter`` decides which command paths may enter the store; a
    rejected topic is logged and dropped.
    """

    def __init__(
        self,
        store: InMemoryStateStore,
        mqtt: MQTTStateClient,
        *,
        base_topic: str,
        qos: int = 1,
        command_filter: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self._store = store
        self._mqtt = mqtt
        self._base_topic = base_topic.strip("/")
        self._qos = qos
        self._command_filter = command_filter
        self._command_subscription = f"{self._base_topic}/+/commands/+{SET_SUFFIX}"
        self._started = False

    @property
    def command_subscription(self) -> str:
        return self._command_subscription

    async def start(self) -> None:
        if self._started:
            return
        self._store.add_listener(self._publish_entry)
        self._mqtt.set_message_handler(self._handle_message)
        self._mqtt.subscribe(self._command_subscription, qos=self._qos)
        self._started = True
        LOGGER.info("State mirror subscribed to %s", self._command_subscription)

    def resubscribe(self) -> None:
        """Renew the command subscription after the broker session restarted."""

        if self._started:
            self._mqtt.subscribe(self._command_subscription, qos=self._qos)
            LOGGER.debug("Renewed subscription to %s", self._command_subscription)

    async def stop(self) -> None:
        if not self._started:
            return
        self._store.remove_listener(self._publish_entry)
        try:
            self._mqtt.unsubscribe(self._command_subscription)
        except Exception:  # pragma: no cover
            LOGGER.debug("Failed to unsubscribe %s", self._command_subscription, exc_info=True)
        finally:
            self._mqtt.set_message_handler(None)
            self._started = False

    async def publish_snapshot(self) -> None:
        """Publish every current entry, e.g. after (re)connecting to the broker."""

        for path in list(self._store.paths()):
            entry = await self._store.get(path)
            if entry is not None:
                self._publish_entry(path, entry)

    def _publish_entry(self, path: str, entry: StateEntry) -> None:
        payload = json.dumps(
            {
                "val": entry.value,
                "ack": entry.ack,
                "ts": entry.updated_at.isoformat(timespec="seconds"),
            }
        ).encode("utf-8")
        try:
            self._mqtt.publish(
                path_to_topic(self._base_topic, path),
                payload,
                qos=self._qos,
                retain=True,
            )
        except (RuntimeError, OSError) as exc:
            LOGGER.warning("Could not publish %s: %s", path, exc)

    async def _handle_message(self, topic: str, payload: bytes) -> None:
        path = topic_to_path(self._base_topic, topic)
        if path is None or ".commands." not in path:
            LOGGER.debug("Ignoring message on %s", topic)
            return
        if self._command_filter is not None and not self._command_filter(path):
            LOGGER.warning("Ignoring command for unknown target on %s", topic)
            return
        value = decode_command_payload(payload)
        LOGGER.debug("Command received via MQTT: %s=%r", path, value)
        await self._store.set(path, value, ack=False)
