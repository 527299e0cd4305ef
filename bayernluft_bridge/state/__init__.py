"""State tree storage and its MQTT mirror."""

from .mqtt_bridge import MQTTStateBridge
from .store import InMemoryStateStore, StateEntry

__all__ = ["InMemoryStateStore", "MQTTStateBridge", "StateEntry"]
