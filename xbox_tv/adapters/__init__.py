"""Adapter modules for external integrations."""

from .mqtt import MQTTClient, MQTTConnectionError
from .smartglass import SmartGlassTransport

__all__ = [
    "MQTTClient",
    "MQTTConnectionError",
    "SmartGlassTransport",
]
