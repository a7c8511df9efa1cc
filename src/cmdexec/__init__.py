"""cmdexec - asyncio process launching and supervision.

Environment variables:
    CMDEXEC_KILL_SIGNAL: graceful signal for kill() (default SIGTERM)
    CMDEXEC_KILL_TIMEOUT: seconds before escalating to SIGKILL (default 0.5)
    CMDEXEC_STRICT_GROUP_SIGNAL: raise when group delivery fails (default false)
    CMDEXEC_READ_CHUNK_SIZE: reader chunk size in bytes (default 65536)
    CMDEXEC_LOG_DEBUG: debug log file in the temp directory (default false)

Usage:
    cmd = Cmd("tr", "[:lower:]", "[:upper:]", stdin=b"hello\\n")
    print(await cmd.output("utf-8"))
"""

__version__ = "0.1.0"

import logging

from .command import Cmd, CmdSpec, CmdState, Pipes
from .config import Config, get_config, load_config, reload_config
from .errors import (
    AlreadyRunningError,
    CmdError,
    GroupSignalError,
    NonZeroExitError,
    NotStartedError,
    SpawnError,
    SpawnErrorCode,
    UnsupportedSignalError,
    WaitTimeoutError,
)
from .io import (
    DataBuffer,
    Reader,
    Writer,
    create_file_reader,
    create_reader,
    create_writer,
    open_pipe_reader,
    open_socket_reader,
    write_data,
)
from .log import configure_logging
from .start import start_cmd

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "__version__",
    # Process handle
    "Cmd",
    "CmdSpec",
    "CmdState",
    "Pipes",
    "start_cmd",
    # IO
    "Reader",
    "Writer",
    "DataBuffer",
    "create_reader",
    "create_writer",
    "create_file_reader",
    "open_pipe_reader",
    "open_socket_reader",
    "write_data",
    # Errors
    "CmdError",
    "NotStartedError",
    "AlreadyRunningError",
    "SpawnError",
    "SpawnErrorCode",
    "WaitTimeoutError",
    "NonZeroExitError",
    "UnsupportedSignalError",
    "GroupSignalError",
    # Config / logging
    "Config",
    "load_config",
    "get_config",
    "reload_config",
    "configure_logging",
]
