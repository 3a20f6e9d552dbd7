"""
Unit tests for cipherchat.utils module.

Tests the clock, display helpers and logging setup.
"""

import logging
import time
from logging.handlers import RotatingFileHandler

import pytest

from cipherchat.config import Config
from cipherchat.constants import LOG_FILENAME, LOGS_DIR, THEME_COLORS
from cipherchat.utils import format_fingerprint, now_ms, pick_avatar_color, setup_logging


class TestClock:
    """Test the millisecond clock."""

    def test_now_ms_is_epoch_milliseconds(self):
        """Test that now_ms tracks time.time() in milliseconds."""
        before = int(time.time() * 1000)
        value = now_ms()
        after = int(time.time() * 1000)

        assert before <= value <= after


class TestFingerprintFormatting:
    """Test fingerprint display formatting."""

    def test_groups_of_four(self):
        """Test that fingerprints are split every 4 characters."""
        assert format_fingerprint("abcd1234efgh") == "abcd 1234 efgh"

    def test_ragged_tail(self):
        """Test a fingerprint whose length is not a multiple of 4."""
        assert format_fingerprint("abcdef") == "abcd ef"

    def test_empty(self):
        """Test the empty fingerprint."""
        assert format_fingerprint("") == ""


class TestAvatarColor:
    """Test avatar colour selection."""

    def test_color_from_palette(self):
        """Test that chosen colours come from the palette."""
        for _ in range(20):
            assert pick_avatar_color() in THEME_COLORS


class TestSetupLogging:
    """Test logger configuration from the [logging] section."""

    @pytest.fixture
    def config(self, temp_dir):
        return Config(temp_dir / "config.toml")

    @pytest.fixture(autouse=True)
    def reset_logger(self):
        yield
        root = logging.getLogger("cipherchat")
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        root.setLevel(logging.NOTSET)

    def test_console_only_by_default(self, config):
        """Test that the default config installs just the stderr handler."""
        root = setup_logging(config)

        assert root.name == "cipherchat"
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0], logging.StreamHandler)

    def test_level_from_config(self, config):
        """Test that the level name is honoured, case-insensitively."""
        config.set("logging", "level", "debug")

        assert setup_logging(config).level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self, config):
        """Test that a bogus level name does not break setup."""
        config.set("logging", "level", "chatty")

        assert setup_logging(config).level == logging.INFO

    def test_file_logging(self, config, temp_dir):
        """Test that file logging writes under <data_dir>/logs."""
        config.set("logging", "file_logging", True)
        config.set("logging", "console_logging", False)

        root = setup_logging(config, data_dir=temp_dir)
        logging.getLogger("cipherchat.test").warning("written to disk")
        for handler in root.handlers:
            handler.flush()

        [handler] = root.handlers
        assert isinstance(handler, RotatingFileHandler)
        log_file = temp_dir / LOGS_DIR / LOG_FILENAME
        assert "written to disk" in log_file.read_text(encoding="utf-8")

    def test_file_logging_uses_config_data_dir(self, config, temp_dir):
        """Test that the data directory defaults to the configured one."""
        config.set("storage", "data_dir", str(temp_dir / "data"))
        config.set("logging", "file_logging", True)

        setup_logging(config)

        assert (temp_dir / "data" / LOGS_DIR).is_dir()

    def test_repeated_setup_replaces_handlers(self, config):
        """Test that calling setup twice does not stack handlers."""
        setup_logging(config)
        root = setup_logging(config)

        assert len(root.handlers) == 1
