"""Main application entry-point for xbox-tv."""

from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, List, Optional

from . import constants
from .adapters import MQTTClient, MQTTConnectionError
from .bridge import TelemetryBridge
from .config import ConsoleConfig, XboxTvConfig, load_config
from .core import DeviceInfo, Outcome
from .events import EventName
from .health import HealthReporter, HealthServer
from .logging import configure_logging, console_logger
from .session import ConsoleSession

LOGGER = logging.getLogger(__name__)

SessionFactory = Callable[[ConsoleConfig], ConsoleSession]


class ServiceState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class XboxTvApp:
    """Runs one console session per configured console.

    Startup connects every session, the MQTT bridge (when enabled) and the
    health endpoint (when enabled). Every session event is logged; shutdown
    stops all of it in reverse order.
    """

    def __init__(
        self,
        config: Optional[XboxTvConfig] = None,
        *,
        session_factory: Optional[SessionFactory] = None,
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        self._config = config or load_config()
        self._session_factory = session_factory or self._default_session
        self._mqtt_client = mqtt_client
        self._bridge: Optional[TelemetryBridge] = None
        self._sessions: List[ConsoleSession] = []
        self._health = HealthReporter(diagnostics=self._diagnostics)
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._state = ServiceState.STARTING

    @property
    def sessions(self) -> List[ConsoleSession]:
        return list(self._sessions)

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def run(self) -> None:
        """Start every service and block until shutdown is requested."""

        self._shutdown_event = asyncio.Event()
        LOGGER.info("xbox-tv starting with config: %s", self._config.path)
        await self._start_services()

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("xbox-tv received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[XboxTvConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
            max_bytes=instance._config.logging.max_bytes,
            backup_count=instance._config.logging.backup_count,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("xbox-tv received shutdown signal")

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------
    async def _start_services(self) -> None:
        if not self._config.consoles:
            LOGGER.warning("No consoles configured in %s", self._config.path)

        await self._start_health_server()
        await self._connect_mqtt()

        for console in self._config.consoles:
            session = self._session_factory(console)
            self._sessions.append(session)
            self._watch(session)
            if self._bridge is not None:
                self._bridge.attach(session)

        outcomes = await asyncio.gather(*(session.connect() for session in self._sessions))
        for session, outcome in zip(self._sessions, outcomes):
            if not outcome:
                console_logger(LOGGER, session.host, session.name).warning(
                    "initial connection failed: %s", outcome.error
                )
                await self._health.update(
                    _component(session), False, str(outcome.error)
                )

        self._state = ServiceState.RUNNING
        LOGGER.info("xbox-tv running with %d console(s)", len(self._sessions))

    async def _stop_services(self) -> None:
        self._state = ServiceState.STOPPING

        if self._bridge is not None:
            await self._bridge.stop()
            self._bridge = None

        if self._sessions:
            await asyncio.gather(*(session.shutdown() for session in self._sessions))

        if self._mqtt_client is not None:
            await self._mqtt_client.disconnect()
            self._mqtt_client = None
            await self._health.update("mqtt", False, "shutdown")

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def _start_health_server(self) -> None:
        resilience = self._config.resilience
        if not resilience.health_enabled or resilience.health_port <= 0:
            return

        server = HealthServer(
            self._health, resilience.health_host, resilience.health_port
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _connect_mqtt(self) -> None:
        mqtt_config = self._config.mqtt
        if not mqtt_config.enabled:
            return

        if self._mqtt_client is None:
            self._mqtt_client = MQTTClient(
                mqtt_config, client_id=f"{constants.APP_NAME}-{os.getpid()}"
            )
        try:
            await self._mqtt_client.connect()
        except MQTTConnectionError as exc:
            LOGGER.error("MQTT connection failed: %s", exc)
            await self._health.update("mqtt", False, str(exc))
            self._mqtt_client = None
            return

        await self._health.update("mqtt", True, None)
        self._bridge = TelemetryBridge(self._mqtt_client, prefix=mqtt_config.prefix)

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------
    def _default_session(self, console: ConsoleConfig) -> ConsoleSession:
        return ConsoleSession(console, options=self._config.session_options())

    def _watch(self, session: ConsoleSession) -> None:
        for name in (EventName.DEBUG, EventName.MESSAGE, EventName.ERROR):
            session.on(name, partial(self._log_event, session))
        session.on(EventName.CONNECTED, partial(self._on_connected, session))
        session.on(EventName.DISCONNECTED, partial(self._on_disconnected, session))
        session.on(EventName.DEVICE_INFO, partial(self._on_device_info, session))

    @staticmethod
    def _log_event(session: ConsoleSession, message: Any) -> None:
        console_logger(LOGGER, session.host, session.name).info("%s", message)

    async def _on_connected(self, session: ConsoleSession, message: Any) -> None:
        self._log_event(session, message)
        await self._health.update(_component(session), True, session.state.value)

    async def _on_disconnected(self, session: ConsoleSession, message: Any) -> None:
        self._log_event(session, message)
        await self._health.update(_component(session), False, str(message))

    @staticmethod
    def _on_device_info(session: ConsoleSession, info: DeviceInfo) -> None:
        LOGGER.info("-------- %s --------", session.name)
        LOGGER.info("Firmware: %s", info.firmware_revision)
        if info.locale:
            LOGGER.info("Locale: %s", info.locale)
        LOGGER.info("----------------------------------")

    def _diagnostics(self) -> List[dict]:
        return [session.diagnostics() for session in self._sessions]


def _component(session: ConsoleSession) -> str:
    return f"console:{session.name}"


def select_console(
    config: XboxTvConfig, name: Optional[str] = None
) -> Optional[ConsoleConfig]:
    """Return the console called ``name``, or the first configured one."""

    for console in config.consoles:
        if name is None or console.name == name:
            return console
    return None


async def run_console_action(
    config: XboxTvConfig,
    console: ConsoleConfig,
    action: Callable[[ConsoleSession], Awaitable[Outcome]],
    *,
    connect_first: bool = True,
) -> Outcome:
    """Run a single session operation against ``console`` and shut down."""

    async with ConsoleSession(console, options=config.session_options()) as session:
        if connect_first:
            outcome = await session.connect()
            if not outcome:
                return outcome
        return await action(session)
