"""Exception classes raised by cmdexec.

Every error derives from :class:`CmdError` so callers can catch the whole
family at once. A few also derive from the closest builtin
(``TimeoutError``, ``ValueError``) so generic handlers keep working.
"""

from __future__ import annotations

from enum import Enum

__all__ = [
    "CmdError",
    "NotStartedError",
    "AlreadyRunningError",
    "SpawnErrorCode",
    "SpawnError",
    "WaitTimeoutError",
    "NonZeroExitError",
    "UnsupportedSignalError",
    "GroupSignalError",
    "NOT_STARTED_MESSAGE",
]

NOT_STARTED_MESSAGE = "process not started"


class CmdError(Exception):
    """Base class for cmdexec errors."""
    pass


class NotStartedError(CmdError):
    """The operation needs a process that was started at least once."""

    def __init__(self, message: str = NOT_STARTED_MESSAGE) -> None:
        super().__init__(message)


class AlreadyRunningError(CmdError):
    """start() or configure() was called while the process is running."""
    pass


class SpawnErrorCode(str, Enum):
    """Best-effort classification of a spawn failure.

    - PERMISSION_DENIED: command or directory not accessible
    - NOT_FOUND: command or directory does not exist
    - IO_ERROR: everything looked fine, so probably an I/O problem
    - UNKNOWN: nothing could be determined
    """

    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    IO_ERROR = "io_error"
    UNKNOWN = "unknown"


class SpawnError(CmdError):
    """The process could not be created.

    Attributes:
        code: classification of the failure
        errno_name: symbolic errno the classification was derived from
            (e.g. ``ENOENT``), or ``UNKNOWN``
        command: the command that failed to start
        message: human readable reason
    """

    def __init__(
        self,
        code: SpawnErrorCode,
        message: str,
        *,
        errno_name: str = "UNKNOWN",
        command: str = "",
    ) -> None:
        self.code = code
        self.errno_name = errno_name
        self.command = command
        self.message = message
        super().__init__(f"failed to spawn process {command} ({errno_name} {message})")


class WaitTimeoutError(CmdError, TimeoutError):
    """wait() ran out of time and the kill sequence was triggered."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Cmd.wait timeout after {timeout}s")


class NonZeroExitError(CmdError):
    """output() saw the process exit with a non-zero status.

    Attributes:
        exit_code: the recorded exit code
        stderr: captured standard error text (may be empty)
    """

    def __init__(self, exit_code: int, stderr: str = "") -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"command exited with status {exit_code}"
        if stderr:
            message += f"; stderr output:\n{stderr}"
        super().__init__(message)


class UnsupportedSignalError(CmdError, ValueError):
    """The requested signal cannot be delivered on this platform."""

    def __init__(self, sig: object) -> None:
        self.signal = sig
        super().__init__(f"unsupported signal: {sig!r}")


class GroupSignalError(CmdError):
    """Group delivery failed while strict group signalling is enabled."""

    def __init__(self, pid: int, cause: OSError) -> None:
        self.pid = pid
        super().__init__(f"could not signal process group of pid={pid}: {cause}")
