"""Adapter modules for external integrations."""

from .http_client import DeviceHttpClient, FailureKind
from .mqtt import MQTTClient, MQTTConnectionError

__all__ = [
    "DeviceHttpClient",
    "FailureKind",
    "MQTTClient",
    "MQTTConnectionError",
]
