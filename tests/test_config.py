"""Config module tests.

Covers CMDEXEC_* parsing, defaults, fallbacks and the cached global.
"""

from __future__ import annotations

import os
import signal
from unittest import mock

import pytest

from cmdexec.config import Config, get_config, load_config, parse_signal, reload_config


class TestParseSignal:
    """Signal name/number resolution."""

    @pytest.mark.parametrize("value", ["SIGTERM", "TERM", "sigterm", "term", " SIGTERM "])
    def test_names(self, value: str):
        assert parse_signal(value) is signal.SIGTERM

    def test_number(self):
        assert parse_signal(int(signal.SIGINT)) is signal.SIGINT

    def test_digit_string(self):
        assert parse_signal(str(int(signal.SIGINT))) is signal.SIGINT

    def test_member_passthrough(self):
        assert parse_signal(signal.SIGTERM) is signal.SIGTERM

    @pytest.mark.parametrize("value", ["SIGNOPE", "banana", 100000])
    def test_unknown(self, value):
        with pytest.raises(ValueError):
            parse_signal(value)


class TestLoadConfig:
    """Environment variable parsing."""

    def test_defaults(self):
        config = load_config()
        assert config.kill_signal is signal.SIGTERM
        assert config.kill_timeout == 0.5
        assert config.strict_group_signal is False
        assert config.read_chunk_size == 64 * 1024
        assert config.log_debug is False
        assert config.log_file is None

    def test_kill_signal(self):
        with mock.patch.dict(os.environ, {"CMDEXEC_KILL_SIGNAL": "int"}):
            assert load_config().kill_signal is signal.SIGINT

    def test_invalid_kill_signal_falls_back(self):
        with mock.patch.dict(os.environ, {"CMDEXEC_KILL_SIGNAL": "SIGBOGUS"}):
            assert load_config().kill_signal is signal.SIGTERM

    @pytest.mark.parametrize(
        "value,expected",
        [("2", 2.0), ("0.25", 0.25), ("0", 0.0), ("-3", 0.0), ("600", 60.0), ("soon", 0.5)],
    )
    def test_kill_timeout(self, value: str, expected: float):
        with mock.patch.dict(os.environ, {"CMDEXEC_KILL_TIMEOUT": value}):
            assert load_config().kill_timeout == expected

    @pytest.mark.parametrize("value", ["true", "True", "1", "yes", "on"])
    def test_strict_group_signal_truthy(self, value: str):
        with mock.patch.dict(os.environ, {"CMDEXEC_STRICT_GROUP_SIGNAL": value}):
            assert load_config().strict_group_signal is True

    @pytest.mark.parametrize("value", ["false", "0", "no", "off", ""])
    def test_strict_group_signal_falsy(self, value: str):
        with mock.patch.dict(os.environ, {"CMDEXEC_STRICT_GROUP_SIGNAL": value}):
            assert load_config().strict_group_signal is False

    @pytest.mark.parametrize("value,expected", [("4096", 4096), ("0", 65536), ("big", 65536)])
    def test_read_chunk_size(self, value: str, expected: int):
        with mock.patch.dict(os.environ, {"CMDEXEC_READ_CHUNK_SIZE": value}):
            assert load_config().read_chunk_size == expected

    def test_log_debug_sets_log_file(self):
        with mock.patch.dict(os.environ, {"CMDEXEC_LOG_DEBUG": "1"}):
            config = load_config()
        assert config.log_debug is True
        assert config.log_file is not None
        assert "cmdexec_debug_" in os.path.basename(config.log_file)


class TestGlobalConfig:
    """Cached global instance."""

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_reload_config_picks_up_changes(self):
        before = get_config()
        with mock.patch.dict(os.environ, {"CMDEXEC_KILL_TIMEOUT": "3"}):
            after = reload_config()
        assert after is not before
        assert after.kill_timeout == 3.0
        assert get_config() is after

    def test_repr(self):
        text = repr(Config())
        assert "kill_signal=SIGTERM" in text
        assert "kill_timeout=0.5" in text
