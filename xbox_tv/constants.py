"""Constants used across the xbox-tv package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "xbox-tv"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".xbox-tv" / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".xbox-tv" / "logs" / f"{APP_NAME}.log"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 3

DEFAULT_CONSOLE_NAME = "Game console"
SMARTGLASS_PORT = 5050
BROADCAST_ADDRESS = "255.255.255.255"

DEFAULT_MQTT_HOST = "localhost"
DEFAULT_MQTT_PORT = 1883
DEFAULT_MQTT_PREFIX = "xbox-tv"
