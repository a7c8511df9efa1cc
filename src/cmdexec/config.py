"""cmdexec environment configuration.

Environment variables:
    CMDEXEC_KILL_SIGNAL: graceful signal sent by kill() and on wait() timeout
        - name (SIGTERM, TERM, sigint) or number
        - default SIGTERM

    CMDEXEC_KILL_TIMEOUT: seconds to wait after the graceful signal
        before escalating to a forced kill
        - default 0.5, clamped to 0-60

    CMDEXEC_STRICT_GROUP_SIGNAL: surface failed process-group delivery
        - true/1/yes = raise GroupSignalError
        - false/0/no = fall back to signalling the process itself (default)

    CMDEXEC_READ_CHUNK_SIZE: chunk size for reader iteration and stream pumps
        - default 65536 bytes

    CMDEXEC_LOG_DEBUG: debug logging to a temporary file
        - true/1/yes = on
        - false/0/no = off (default, logs go to stderr)
"""

from __future__ import annotations

import os
import signal
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config", "parse_signal"]

DEFAULT_KILL_TIMEOUT = 0.5
DEFAULT_READ_CHUNK_SIZE = 64 * 1024


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def parse_signal(value: str | int | signal.Signals) -> signal.Signals:
    """Resolve a signal name or number to a ``signal.Signals`` member.

    Accepts ``SIGTERM``, ``TERM``, ``sigterm`` and numbers.

    Raises:
        ValueError: the signal does not exist on this platform
    """
    if isinstance(value, signal.Signals):
        return value
    if isinstance(value, int):
        return signal.Signals(value)
    name = str(value).strip().upper()
    if name.isdigit():
        return signal.Signals(int(name))
    if not name.startswith("SIG"):
        name = "SIG" + name
    try:
        return signal.Signals[name]
    except KeyError:
        raise ValueError(f"unknown signal {value!r}") from None


def _parse_kill_signal(value: str | None) -> signal.Signals:
    if not value:
        return signal.SIGTERM
    try:
        return parse_signal(value)
    except ValueError:
        return signal.SIGTERM


def _parse_kill_timeout(value: str | None) -> float:
    if not value:
        return DEFAULT_KILL_TIMEOUT
    try:
        timeout = float(value)
    except ValueError:
        return DEFAULT_KILL_TIMEOUT
    return max(0.0, min(timeout, 60.0))


def _parse_chunk_size(value: str | None) -> int:
    if not value:
        return DEFAULT_READ_CHUNK_SIZE
    try:
        size = int(value)
    except ValueError:
        return DEFAULT_READ_CHUNK_SIZE
    return size if size > 0 else DEFAULT_READ_CHUNK_SIZE


def _generate_log_file_path() -> str:
    """Build a timestamped log file path under the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "cmdexec"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"cmdexec_debug_{timestamp}.log"

    return str(log_file.resolve())


@dataclass
class Config:
    """cmdexec configuration.

    Attributes:
        kill_signal: graceful signal used by kill() and wait() timeouts
        kill_timeout: seconds between graceful signal and forced kill
        strict_group_signal: raise when group delivery fails
        read_chunk_size: chunk size for iteration and pumps
        log_debug: debug logging to a file
        log_file: log file path (set when log_debug is on)
    """

    kill_signal: signal.Signals = signal.SIGTERM
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    strict_group_signal: bool = False
    read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(kill_signal={self.kill_signal.name}, "
            f"kill_timeout={self.kill_timeout}, "
            f"strict_group_signal={self.strict_group_signal}, "
            f"read_chunk_size={self.read_chunk_size}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def load_config() -> Config:
    """Load configuration from the environment."""
    log_debug = _parse_bool(os.environ.get("CMDEXEC_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        kill_signal=_parse_kill_signal(os.environ.get("CMDEXEC_KILL_SIGNAL")),
        kill_timeout=_parse_kill_timeout(os.environ.get("CMDEXEC_KILL_TIMEOUT")),
        strict_group_signal=_parse_bool(
            os.environ.get("CMDEXEC_STRICT_GROUP_SIGNAL"), default=False
        ),
        read_chunk_size=_parse_chunk_size(os.environ.get("CMDEXEC_READ_CHUNK_SIZE")),
        log_debug=log_debug,
        log_file=log_file,
    )


# Lazily loaded global instance
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload the global configuration (used by tests)."""
    global _config
    _config = load_config()
    return _config
