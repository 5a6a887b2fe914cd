"""Tests for logging configuration."""
import logging

import pytest

from hass_link.logging_setup import LOG_FORMAT, configure_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    ws_level = logging.getLogger("websockets").level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("websockets").setLevel(ws_level)


def test_configure_logging_writes_to_file(tmp_path, restore_logging):
    log_file = tmp_path / "logs" / "hass_link.log"

    configure_logging(logging.DEBUG, log_file=log_file)
    logging.getLogger("hass_link.websocket_client").debug("Received: auth_ok")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert logging.getLogger().level == logging.DEBUG
    assert "hass_link.websocket_client - DEBUG - Received: auth_ok" in log_file.read_text()


def test_configure_logging_quiets_websockets(restore_logging):
    configure_logging(logging.DEBUG)

    root = logging.getLogger()
    assert logging.getLogger("websockets").level == logging.WARNING
    assert [type(h) for h in root.handlers] == [logging.StreamHandler]
    assert root.handlers[0].formatter._fmt == LOG_FORMAT
