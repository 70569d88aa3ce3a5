"""Logging configuration helpers."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, MutableMapping, Optional

from . import constants

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Library loggers that are chatty at debug level; the SmartGlass transport
# logs every datagram.
NETWORK_LOGGERS = {
    "aiohttp.access": logging.WARNING,
    "paho": logging.WARNING,
    "xbox_tv.adapters.smartglass": logging.INFO,
}


class ConsoleLogAdapter(logging.LoggerAdapter):
    """Prefix records with the console they concern.

    Produces ``Device: <host> <name>, <message>`` lines so the output of
    several sessions sharing one log stays attributable.
    """

    def __init__(self, logger: logging.Logger, host: str, name: str) -> None:
        super().__init__(logger, {"console_host": host, "console_name": name})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        kwargs.setdefault("extra", {}).update(extra)
        return f"Device: {extra['console_host']} {extra['console_name']}, {msg}", kwargs


def console_logger(logger: logging.Logger, host: str, name: str) -> ConsoleLogAdapter:
    return ConsoleLogAdapter(logger, host, name)


def configure_logging(
    level: str = "INFO",
    *,
    log_path: Optional[Path] = None,
    log_network: bool = False,
    max_bytes: int = constants.DEFAULT_LOG_MAX_BYTES,
    backup_count: int = constants.DEFAULT_LOG_BACKUP_COUNT,
) -> None:
    """Configure root logging handlers.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional path of a size-rotated log file. When absent, only console
        logging is configured.
    log_network:
        When true, keep debug output of the MQTT and HTTP libraries and the
        SmartGlass transport.
    max_bytes, backup_count:
        Rotation limits of the log file.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max(0, max_bytes),
            backupCount=max(0, backup_count),
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    for name, quiet_level in NETWORK_LOGGERS.items():
        logging.getLogger(name).setLevel(logging.NOTSET if log_network else quiet_level)
