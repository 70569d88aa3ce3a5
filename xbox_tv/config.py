"""Configuration loader for xbox-tv."""

from __future__ import annotations

import logging
from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from . import constants
from .core import Credentials

LOGGER = logging.getLogger(__name__)

CONSOLE_SECTION_PREFIX = "console"


@dataclass(slots=True)
class ConsoleConfig:
    host: str
    live_id: str
    name: str = constants.DEFAULT_CONSOLE_NAME
    user_token: Optional[str] = None
    user_hash: Optional[str] = None
    disable_log_info: bool = False
    enable_debug_mode: bool = False

    @property
    def credentials(self) -> Optional[Credentials]:
        if self.user_token and self.user_hash:
            return Credentials(user_token=self.user_token, user_hash=self.user_hash)
        return None


@dataclass(slots=True)
class PowerConfig:
    wake_attempts: int = 5
    wake_interval_seconds: float = 1.0
    power_on_timeout_seconds: float = 15.0
    probe_interval_seconds: float = 1.0
    probe_timeout_seconds: float = 1.0


@dataclass(slots=True)
class CommandConfig:
    ack_timeout_seconds: float = 2.0
    max_retries: int = 1
    channel_open_timeout_seconds: float = 5.0


@dataclass(slots=True)
class ResilienceConfig:
    connect_timeout_seconds: float = 5.0
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.0
    reconnect_max_attempts: int = 5
    keepalive_interval_seconds: float = 3.0
    keepalive_timeout_seconds: float = 10.0
    device_info_timeout_seconds: float = 5.0
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(slots=True)
class MqttConfig:
    enabled: bool = False
    host: str = constants.DEFAULT_MQTT_HOST
    port: int = constants.DEFAULT_MQTT_PORT
    prefix: str = constants.DEFAULT_MQTT_PREFIX
    username: Optional[str] = None
    password: Optional[str] = None
    keepalive: int = 60


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False
    max_bytes: int = constants.DEFAULT_LOG_MAX_BYTES
    backup_count: int = constants.DEFAULT_LOG_BACKUP_COUNT


@dataclass(slots=True)
class SessionOptions:
    """Timing and retry policy handed to each console session."""

    power: PowerConfig = field(default_factory=PowerConfig)
    commands: CommandConfig = field(default_factory=CommandConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)


@dataclass(slots=True)
class XboxTvConfig:
    consoles: List[ConsoleConfig]
    power: PowerConfig
    commands: CommandConfig
    resilience: ResilienceConfig
    mqtt: MqttConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path

    def session_options(self) -> SessionOptions:
        return SessionOptions(
            power=self.power, commands=self.commands, resilience=self.resilience
        )


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_console(section: SectionProxy) -> Optional[ConsoleConfig]:
    host = _optional(section.get("host"))
    live_id = _optional(section.get("live_id"))
    if not host or not live_id:
        LOGGER.warning(
            "Skipping [%s]: host or live_id missing", section.name
        )
        return None

    name = _optional(section.get("name"))
    if name is None:
        suffix = section.name[len(CONSOLE_SECTION_PREFIX):].strip()
        name = suffix or constants.DEFAULT_CONSOLE_NAME

    return ConsoleConfig(
        host=host,
        live_id=live_id,
        name=name,
        user_token=_optional(section.get("user_token")),
        user_hash=_optional(section.get("user_hash")),
        disable_log_info=section.getboolean("disable_log_info", fallback=False),
        enable_debug_mode=section.getboolean("enable_debug_mode", fallback=False),
    )


def _is_console_section(name: str) -> bool:
    return name == CONSOLE_SECTION_PREFIX or name.startswith(
        CONSOLE_SECTION_PREFIX + " "
    )


def load_config(path: Optional[Path] = None) -> XboxTvConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "power": {
                "wake_attempts": "5",
                "wake_interval_seconds": "1.0",
                "power_on_timeout_seconds": "15.0",
                "probe_interval_seconds": "1.0",
                "probe_timeout_seconds": "1.0",
            },
            "commands": {
                "ack_timeout_seconds": "2.0",
                "max_retries": "1",
                "channel_open_timeout_seconds": "5.0",
            },
            "resilience": {
                "connect_timeout_seconds": "5.0",
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "reconnect_jitter_ratio": "0.0",
                "reconnect_max_attempts": "5",
                "keepalive_interval_seconds": "3.0",
                "keepalive_timeout_seconds": "10.0",
                "device_info_timeout_seconds": "5.0",
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
            "mqtt": {
                "enabled": "false",
                "host": constants.DEFAULT_MQTT_HOST,
                "port": str(constants.DEFAULT_MQTT_PORT),
                "prefix": constants.DEFAULT_MQTT_PREFIX,
                "keepalive": "60",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
                "max_bytes": str(constants.DEFAULT_LOG_MAX_BYTES),
                "backup_count": str(constants.DEFAULT_LOG_BACKUP_COUNT),
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    consoles = []
    for section_name in parser.sections():
        if not _is_console_section(section_name):
            continue
        console = _parse_console(parser[section_name])
        if console is not None:
            consoles.append(console)

    power_defaults = PowerConfig()
    power = PowerConfig(
        wake_attempts=max(
            1,
            parser.getint(
                "power", "wake_attempts", fallback=power_defaults.wake_attempts
            ),
        ),
        wake_interval_seconds=max(
            0.0,
            parser.getfloat(
                "power",
                "wake_interval_seconds",
                fallback=power_defaults.wake_interval_seconds,
            ),
        ),
        power_on_timeout_seconds=max(
            0.0,
            parser.getfloat(
                "power",
                "power_on_timeout_seconds",
                fallback=power_defaults.power_on_timeout_seconds,
            ),
        ),
        probe_interval_seconds=max(
            0.0,
            parser.getfloat(
                "power",
                "probe_interval_seconds",
                fallback=power_defaults.probe_interval_seconds,
            ),
        ),
        probe_timeout_seconds=max(
            0.01,
            parser.getfloat(
                "power",
                "probe_timeout_seconds",
                fallback=power_defaults.probe_timeout_seconds,
            ),
        ),
    )

    commands = CommandConfig(
        ack_timeout_seconds=parser.getfloat(
            "commands", "ack_timeout_seconds", fallback=2.0
        ),
        max_retries=max(0, parser.getint("commands", "max_retries", fallback=1)),
        channel_open_timeout_seconds=parser.getfloat(
            "commands", "channel_open_timeout_seconds", fallback=5.0
        ),
    )

    resilience = ResilienceConfig(
        connect_timeout_seconds=parser.getfloat(
            "resilience", "connect_timeout_seconds", fallback=5.0
        ),
        reconnect_initial_seconds=parser.getfloat(
            "resilience", "reconnect_initial_seconds", fallback=1.0
        ),
        reconnect_max_seconds=parser.getfloat(
            "resilience", "reconnect_max_seconds", fallback=30.0
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat("resilience", "reconnect_jitter_ratio", fallback=0.0),
            ),
        ),
        reconnect_max_attempts=max(
            1, parser.getint("resilience", "reconnect_max_attempts", fallback=5)
        ),
        keepalive_interval_seconds=parser.getfloat(
            "resilience", "keepalive_interval_seconds", fallback=3.0
        ),
        keepalive_timeout_seconds=parser.getfloat(
            "resilience", "keepalive_timeout_seconds", fallback=10.0
        ),
        device_info_timeout_seconds=parser.getfloat(
            "resilience", "device_info_timeout_seconds", fallback=5.0
        ),
        health_enabled=parser.getboolean(
            "resilience", "health_enabled", fallback=False
        ),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    mqtt = MqttConfig(
        enabled=parser.getboolean("mqtt", "enabled", fallback=False),
        host=parser.get("mqtt", "host", fallback=constants.DEFAULT_MQTT_HOST),
        port=parser.getint("mqtt", "port", fallback=constants.DEFAULT_MQTT_PORT),
        prefix=parser.get("mqtt", "prefix", fallback=constants.DEFAULT_MQTT_PREFIX),
        username=_optional(parser.get("mqtt", "username", fallback=None)),
        password=_optional(parser.get("mqtt", "password", fallback=None)),
        keepalive=parser.getint("mqtt", "keepalive", fallback=60),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(
            parser.get("logging", "path", fallback=str(constants.DEFAULT_LOG_PATH))
        ).expanduser(),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
        max_bytes=max(
            0,
            parser.getint(
                "logging", "max_bytes", fallback=constants.DEFAULT_LOG_MAX_BYTES
            ),
        ),
        backup_count=max(
            0,
            parser.getint(
                "logging", "backup_count", fallback=constants.DEFAULT_LOG_BACKUP_COUNT
            ),
        ),
    )

    return XboxTvConfig(
        consoles=consoles,
        power=power,
        commands=commands,
        resilience=resilience,
        mqtt=mqtt,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: XboxTvConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
