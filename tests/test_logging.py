import logging
from logging.handlers import RotatingFileHandler

import pytest

from xbox_tv.logging import configure_logging, console_logger


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    for name in ("aiohttp.access", "paho", "xbox_tv.adapters.smartglass"):
        logging.getLogger(name).setLevel(logging.NOTSET)


def test_file_handler_rotates(tmp_path, restore_root_logging):
    log_path = tmp_path / "logs" / "xbox-tv.log"

    configure_logging("DEBUG", log_path=log_path, max_bytes=2048, backup_count=2)

    handlers = [
        handler
        for handler in restore_root_logging.handlers
        if isinstance(handler, RotatingFileHandler)
    ]
    assert len(handlers) == 1
    assert handlers[0].maxBytes == 2048
    assert handlers[0].backupCount == 2
    assert restore_root_logging.level == logging.DEBUG

    logging.getLogger("xbox_tv.test").info("hello from the service")
    handlers[0].flush()
    assert "hello from the service" in log_path.read_text(encoding="utf-8")


def test_network_loggers_are_quieted_unless_requested(restore_root_logging):
    configure_logging("DEBUG")
    assert logging.getLogger("paho").level == logging.WARNING
    assert logging.getLogger("xbox_tv.adapters.smartglass").level == logging.INFO

    configure_logging("DEBUG", log_network=True)
    assert logging.getLogger("paho").level == logging.NOTSET


def test_console_logger_prefixes_device(caplog):
    logger = logging.getLogger("xbox_tv.app")

    with caplog.at_level(logging.INFO, logger="xbox_tv.app"):
        console_logger(logger, "192.0.2.10", "Den").info("Connected to %s", "console")
        console_logger(logger, "192.0.2.11", "Attic").warning("offline")

    assert caplog.messages == [
        "Device: 192.0.2.10 Den, Connected to console",
        "Device: 192.0.2.11 Attic, offline",
    ]
    assert caplog.records[0].console_name == "Den"
