"""
Tests for logging setup and per-channel levels
"""

import logging
import os
from unittest.mock import patch

import pytest

from calsync.utils.logging_config import (
    CHANNELS,
    configure_channels,
    configure_logging,
    level_from_env,
    parse_level,
)


@pytest.fixture(autouse=True)
def restore_levels():
    names = [name for _, names in CHANNELS.values() for name in names] + ["httpx", ""]
    saved = {name: logging.getLogger(name).level for name in names}
    handlers = logging.getLogger().handlers[:]
    yield
    for name, level in saved.items():
        logging.getLogger(name).setLevel(level)
    logging.getLogger().handlers[:] = handlers


class TestLevels:

    @pytest.mark.parametrize("raw,expected", [
        ("debug", logging.DEBUG),
        (" WARNING ", logging.WARNING),
        ("15", 15),
        ("chatty", logging.INFO),
        (None, logging.INFO),
    ])
    def test_parse_level(self, raw, expected):
        assert parse_level(raw, logging.INFO) == expected

    def test_root_level_from_env(self):
        with patch.dict(os.environ, {"LOG_LEVEL": "error"}):
            assert level_from_env() == logging.ERROR


class TestChannels:

    def test_sync_channel_can_be_raised_alone(self):
        with patch.dict(os.environ, {"LOG_LEVEL_SYNC": "DEBUG"}, clear=False):
            os.environ.pop("LOG_LEVEL_PROVIDERS", None)
            applied = configure_channels()

        assert applied == {"sync": logging.DEBUG}
        assert logging.getLogger("calsync.services.sync_orchestrator").level == logging.DEBUG
        assert logging.getLogger("calsync.services.sync_guard").level == logging.DEBUG
        assert logging.getLogger("calsync.services.conflict_service").getEffectiveLevel() != logging.DEBUG

    def test_provider_channel_covers_every_provider_module(self):
        with patch.dict(os.environ, {"LOG_LEVEL_PROVIDERS": "WARNING"}):
            configure_channels()

        assert logging.getLogger("calsync.providers.caldav_client").getEffectiveLevel() == logging.WARNING

    def test_channel_debug_reaches_the_handler(self, capsys):
        with patch.dict(os.environ, {"LOG_LEVEL_SYNC": "DEBUG"}):
            configure_logging(level=logging.INFO, force=True)

        logging.getLogger("calsync.services.sync_guard").debug("lease renewed")
        logging.getLogger("calsync.services.conflict_service").debug("not shown")

        out = capsys.readouterr().out
        assert "lease renewed" in out
        assert "not shown" not in out

    def test_http_stack_is_quietened(self):
        configure_logging(level=logging.DEBUG, force=True)
        assert logging.getLogger("httpx").level == logging.WARNING
