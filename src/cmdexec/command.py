"""Process handle with stdio wiring, spawn-failure diagnosis and kill escalation.

cmdexec command module

This module provides:
- CmdSpec: immutable description of a process (command, dir, env, stdio)
- Cmd: lifecycle of one process at a time (start/run/output/wait/signal/kill)
- Pipes: the caller's ends of whatever stdio was piped

Key design points:
- POSIX: start_new_session=True so the process leads its own group and
  group signalling reaches its children
- Spawn failure is detected by the absence of a pid; the reason is
  diagnosed by probing the command path and working directory
- Termination: graceful signal -> timeout -> SIGKILL to the process itself
- Exit and failure resolve a one-shot Completion exactly once
"""

from __future__ import annotations

import asyncio
import collections
import dataclasses
import errno
import logging
import os
import shutil
import signal
import stat
import subprocess
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from types import MappingProxyType
from typing import Any, Literal, Union

from .config import get_config, parse_signal
from .errors import (
    AlreadyRunningError,
    GroupSignalError,
    NonZeroExitError,
    NotStartedError,
    SpawnError,
    SpawnErrorCode,
    UnsupportedSignalError,
    WaitTimeoutError,
)
from .io import DataBuffer, Reader, TrackedStreamReader, Writer, open_pipe_reader

# Platform detection
IS_WINDOWS = sys.platform == "win32"

if not IS_WINDOWS:
    import fcntl

__all__ = [
    "Cmd",
    "CmdSpec",
    "CmdState",
    "Completion",
    "Pipes",
    "SignalMode",
    "exit_code_from_status",
    "guess_spawn_error",
    "IS_WINDOWS",
    "PIPE",
    "INHERIT",
]

logger = logging.getLogger(__name__)

PIPE = "pipe"
INHERIT = "inherit"

SignalMode = Literal["standard", "group"]
SignalLike = Union[int, str, signal.Signals]

StdinSource = Union[None, str, bytes, bytearray, memoryview, Reader, int, Any]
OutputSink = Union[None, str, int, Writer, Any]
ExtraFile = Union[None, str, int, Any]

_BUFFER_TYPES = (bytes, bytearray, memoryview)

_SPAWN_ERROR_CODES = {
    "EACCES": SpawnErrorCode.PERMISSION_DENIED,
    "EPERM": SpawnErrorCode.PERMISSION_DENIED,
    "ENOENT": SpawnErrorCode.NOT_FOUND,
    "ENOTDIR": SpawnErrorCode.NOT_FOUND,
    "EIO": SpawnErrorCode.IO_ERROR,
}


class CmdState(str, Enum):
    """Lifecycle state of a Cmd."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    EXITED = "exited"
    SPAWN_FAILED = "spawn_failed"


def _has_fileno(value: Any) -> bool:
    return callable(getattr(value, "fileno", None))


def _check_keyword(name: str, value: str, allowed: tuple[str, ...]) -> None:
    if value not in allowed:
        raise ValueError(f"{name} must be one of {allowed}, got {value!r}")


def _check_stdin(value: Any) -> None:
    if value is None or isinstance(value, (_BUFFER_TYPES, Reader, int)):
        return
    if isinstance(value, str):
        _check_keyword("stdin", value, (INHERIT, PIPE))
        return
    if not _has_fileno(value):
        raise TypeError(f"unsupported stdin source: {type(value).__name__}")


def _check_output(name: str, value: Any) -> None:
    if value is None or isinstance(value, (Writer, int)):
        return
    if isinstance(value, str):
        _check_keyword(name, value, (INHERIT, PIPE))
        return
    if not _has_fileno(value):
        raise TypeError(f"unsupported {name} sink: {type(value).__name__}")


def _check_extra(index: int, value: Any) -> None:
    if value is None or isinstance(value, int):
        return
    if isinstance(value, str):
        _check_keyword(f"extra_files[{index}]", value, (PIPE,))
        return
    if not _has_fileno(value):
        raise TypeError(f"unsupported extra_files[{index}]: {type(value).__name__}")


def _snapshot_environ() -> dict[str, str | None]:
    return dict(os.environ)


@dataclass(frozen=True)
class CmdSpec:
    """Specification for a process to run.

    Attributes:
        command: executable name or path (or shell command line)
        args: arguments passed after the command
        dir: working directory; empty uses the current directory
        env: environment, resolved when the CmdSpec is built; None values
            are dropped
        shell: False, True for the default shell, or a shell program path
        stdin: None (suppress), "inherit", "pipe", a bytes buffer, a
            Reader, a descriptor or an object with fileno()
        stdout: None (suppress), "inherit", "pipe", a descriptor, a Writer
            or an object with fileno()
        stderr: same as stdout
        extra_files: descriptors 3, 4, ... : None, "pipe", a descriptor or
            an object with fileno()
        windows_hide: hide the console window on Windows
    """

    command: str
    args: Sequence[str] = ()
    dir: str = ""
    env: Mapping[str, str | None] = field(default_factory=_snapshot_environ)
    shell: bool | str = False
    stdin: StdinSource = None
    stdout: OutputSink = None
    stderr: OutputSink = None
    extra_files: Sequence[ExtraFile] = ()
    windows_hide: bool = True

    def __post_init__(self) -> None:
        if not self.command:
            raise ValueError("command must not be empty")
        object.__setattr__(self, "args", tuple(str(arg) for arg in self.args))
        object.__setattr__(self, "extra_files", tuple(self.extra_files))
        object.__setattr__(
            self,
            "env",
            MappingProxyType({k: str(v) for k, v in self.env.items() if v is not None}),
        )

        _check_stdin(self.stdin)
        _check_output("stdout", self.stdout)
        _check_output("stderr", self.stderr)
        for index, entry in enumerate(self.extra_files):
            _check_extra(index, entry)

    @property
    def cwd(self) -> str | None:
        """Working directory with ``~`` expanded, or None for the current one."""
        return os.path.expanduser(self.dir) if self.dir else None


@dataclass(frozen=True)
class Pipes:
    """Caller ends of the piped descriptors of one started process.

    Attributes:
        stdin: write end, when stdin was "pipe"
        stdout: read end, when stdout was "pipe"
        stderr: read end, when stderr was "pipe"
        extra_files: one entry per extra descriptor; a Reader where the
            entry was "pipe", None elsewhere
    """

    stdin: Writer | None = None
    stdout: Reader | None = None
    stderr: Reader | None = None
    extra_files: list[Reader | None] = field(default_factory=list)


def _consume_exception(future: asyncio.Future[int]) -> None:
    if not future.cancelled():
        future.exception()


class Completion:
    """One-shot result cell for the exit code of one run.

    The first resolve() or reject() wins; later calls are no-ops that
    return False. A Completion built without a future stands for "never
    started" and its wait() raises NotStartedError.
    """

    def __init__(self, future: asyncio.Future[int] | None = None) -> None:
        self._future = future
        if future is not None:
            # Rejections nobody waits for must not be reported as unretrieved.
            future.add_done_callback(_consume_exception)

    @classmethod
    def create(cls) -> Completion:
        return cls(asyncio.get_running_loop().create_future())

    @property
    def done(self) -> bool:
        return self._future is None or self._future.done()

    def resolve(self, exit_code: int) -> bool:
        if self._future is None or self._future.done():
            return False
        self._future.set_result(exit_code)
        return True

    def reject(self, error: BaseException) -> bool:
        if self._future is None or self._future.done():
            return False
        self._future.set_exception(error)
        return True

    async def wait(self) -> int:
        if self._future is None:
            raise NotStartedError()
        # Shielded so a cancelled waiter leaves the outcome to the others.
        return await asyncio.shield(self._future)


def exit_code_from_status(returncode: int | None, signal_name: str | None = None) -> int:
    """Normalize a termination report to a signed exit code.

    A signal name wins over the numeric code and is recorded as the negated
    signal number (-1 when the name is unknown). A missing code counts as 0.
    """
    if signal_name:
        try:
            return -int(parse_signal(signal_name))
        except ValueError:
            return -1
    if returncode is None:
        return 0
    return returncode


def _resolve_signal(sig: SignalLike) -> signal.Signals:
    try:
        signum = parse_signal(sig)
    except ValueError:
        raise UnsupportedSignalError(sig) from None
    if not IS_WINDOWS and signum not in signal.valid_signals():
        raise UnsupportedSignalError(sig)
    return signum


def _probe_dir(directory: str) -> None:
    st = os.stat(directory)
    if not stat.S_ISDIR(st.st_mode):
        raise NotADirectoryError(errno.ENOTDIR, os.strerror(errno.ENOTDIR), directory)
    if not os.access(directory, os.R_OK | os.X_OK):
        raise PermissionError(errno.EACCES, os.strerror(errno.EACCES), directory)


def _shell_program(spec: CmdSpec) -> str:
    if isinstance(spec.shell, str):
        return spec.shell
    if IS_WINDOWS:
        return os.environ.get("COMSPEC", "cmd.exe")
    return "/bin/sh"


def _resolve_program(program: str, directory: str, env: Mapping[str, str]) -> str:
    if os.sep in program or (os.altsep and os.altsep in program):
        return program if os.path.isabs(program) else os.path.join(directory, program)
    found = shutil.which(program, path=env.get("PATH", os.defpath))
    if found is None:
        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), program)
    return found


def _spawn_error(spec: CmdSpec, err_no: int | None, detail: str = "") -> SpawnError:
    errno_name = errno.errorcode.get(err_no, "UNKNOWN") if err_no else "UNKNOWN"
    message = os.strerror(err_no) if err_no else "unspecified error"
    return SpawnError(
        _SPAWN_ERROR_CODES.get(errno_name, SpawnErrorCode.UNKNOWN),
        message + detail,
        errno_name=errno_name,
        command=spec.command,
    )


def guess_spawn_error(spec: CmdSpec, cause: BaseException | None = None) -> SpawnError:
    """Work out why spawning ``spec`` failed by probing the filesystem.

    Checks the working directory first, then the program (the shell in
    shell mode): existence, regular file, executable bit. When all of that
    looks fine the platform error, if any, is used, else EIO.
    """
    directory = spec.cwd or os.getcwd()
    program = _shell_program(spec) if spec.shell else spec.command

    try:
        _probe_dir(directory)
    except OSError as e:
        return _spawn_error(spec, e.errno or errno.ENOENT, f"; cmd.dir={directory}")

    try:
        path = _resolve_program(program, directory, spec.env)
        st = os.stat(path)
    except OSError as e:
        return _spawn_error(spec, e.errno or errno.ENOENT)

    if not stat.S_ISREG(st.st_mode) or not os.access(path, os.X_OK):
        return _spawn_error(spec, errno.EACCES)

    return _spawn_error(spec, getattr(cause, "errno", None) or errno.EIO)


class _ExtraFiles:
    """Places extra descriptors at 3, 4, ... in the child (POSIX only).

    Sources are duplicated above the target range, free slots inside the
    range are held by placeholders while spawning so the spawn machinery
    cannot allocate them, and the child renumbers with dup2.
    """

    def __init__(self, entries: Sequence[ExtraFile]) -> None:
        if IS_WINDOWS:
            raise ValueError("extra_files is not supported on Windows")
        self._entries = entries
        self._sources: list[int | None] = []
        self._read_ends: dict[int, int] = {}
        self._temporary: list[int] = []

    def prepare(self) -> dict[str, Any]:
        top = 3 + len(self._entries)

        for index, entry in enumerate(self._entries):
            if entry is None:
                self._sources.append(None)
                continue
            if entry == PIPE:
                read_end, write_end = os.pipe()
                self._read_ends[index] = read_end
                self._temporary.append(write_end)
                source = write_end
            else:
                source = entry if isinstance(entry, int) else entry.fileno()
            high = fcntl.fcntl(source, fcntl.F_DUPFD, top)
            os.set_inheritable(high, False)
            self._temporary.append(high)
            self._sources.append(high)

        while True:
            fd = os.open(os.devnull, os.O_RDONLY | os.O_CLOEXEC)
            if fd >= top:
                os.close(fd)
                break
            self._temporary.append(fd)

        targets = tuple(3 + i for i, source in enumerate(self._sources) if source is not None)
        return {"preexec_fn": self._renumber, "pass_fds": targets}

    def _renumber(self) -> None:
        # Runs in the child between fork and exec.
        for index, source in enumerate(self._sources):
            if source is not None:
                os.dup2(source, 3 + index)

    def release(self, *, failed: bool) -> None:
        for fd in self._temporary:
            os.close(fd)
        self._temporary.clear()
        if failed:
            for fd in self._read_ends.values():
                os.close(fd)
            self._read_ends.clear()

    async def open_readers(self) -> list[Reader | None]:
        readers: list[Reader | None] = []
        for index in range(len(self._entries)):
            fd = self._read_ends.pop(index, None)
            readers.append(await open_pipe_reader(fd) if fd is not None else None)
        return readers


class _CmdProtocol(asyncio.SubprocessProtocol):
    """Feeds piped output into StreamReaders and tracks stdin flow control."""

    def __init__(self, limit: int, on_exit: Any) -> None:
        self._limit = limit
        self._on_exit = on_exit
        self._transport: asyncio.SubprocessTransport | None = None
        self._pipe_fds: set[int] = set()
        self._exited = False
        self._paused = False
        self._stdin_lost = False
        self._drain_waiters: collections.deque[asyncio.Future[None]] = collections.deque()
        self.streams: dict[int, asyncio.StreamReader] = {}

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]
        for fd in (0, 1, 2):
            pipe = self._transport.get_pipe_transport(fd)
            if pipe is None:
                continue
            self._pipe_fds.add(fd)
            if fd == 0:
                continue
            stream = TrackedStreamReader(self._limit)
            stream.set_transport(pipe)
            self.streams[fd] = stream

    def pipe_data_received(self, fd: int, data: bytes) -> None:
        stream = self.streams.get(fd)
        if stream is not None:
            stream.feed_data(data)

    def pipe_connection_lost(self, fd: int, exc: Exception | None) -> None:
        if fd == 0:
            self._stdin_lost = True
            self._wake_drain_waiters(exc)
        else:
            stream = self.streams.get(fd)
            if stream is not None:
                if exc is None:
                    stream.feed_eof()
                else:
                    stream.set_exception(exc)
        self._pipe_fds.discard(fd)
        self._maybe_close_transport()

    def process_exited(self) -> None:
        self._exited = True
        if self._transport is not None:
            self._on_exit(self._transport.get_returncode())
        self._maybe_close_transport()

    def _maybe_close_transport(self) -> None:
        if self._exited and not self._pipe_fds and self._transport is not None:
            self._transport.close()
            self._transport = None

    def pause_writing(self) -> None:
        self._paused = True

    def resume_writing(self) -> None:
        self._paused = False
        self._wake_drain_waiters(None)

    def _wake_drain_waiters(self, exc: Exception | None) -> None:
        while self._drain_waiters:
            waiter = self._drain_waiters.popleft()
            if waiter.done():
                continue
            if exc is None:
                waiter.set_result(None)
            else:
                waiter.set_exception(exc)

    async def drain(self) -> None:
        if self._stdin_lost:
            raise BrokenPipeError("process stdin closed")
        if not self._paused:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._drain_waiters.append(waiter)
        await waiter


def _stdin_plan(source: StdinSource) -> tuple[Any, bytes | None, Reader | None]:
    """Return (Popen stdin argument, buffer to feed, reader to pump)."""
    if source is None:
        return subprocess.DEVNULL, None, None
    if isinstance(source, str):
        return (subprocess.PIPE if source == PIPE else None), None, None
    if isinstance(source, _BUFFER_TYPES):
        return subprocess.PIPE, bytes(source), None
    if isinstance(source, Reader):
        return subprocess.PIPE, None, source
    if isinstance(source, int):
        return source, None, None
    return source.fileno(), None, None


def _output_plan(name: str, sink: OutputSink) -> tuple[Any, Writer | None]:
    """Return (Popen argument, Writer handed over to the child)."""
    if sink is None:
        return subprocess.DEVNULL, None
    if isinstance(sink, str):
        return (subprocess.PIPE if sink == PIPE else None), None
    if isinstance(sink, int):
        return sink, None
    if isinstance(sink, Writer):
        fd = sink.fileno()
        if fd is None:
            raise ValueError(f"{name} writer is not backed by a descriptor")
        return fd, sink
    return sink.fileno(), None


def _decode_stderr(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


async def _collect(reader: Reader, sink: DataBuffer) -> None:
    async for chunk in reader:
        sink.write(chunk)


class Cmd:
    """An external command being prepared or run.

    One Cmd owns at most one live process. It can be started again once
    the previous process exited or failed to spawn.

    Example:
        cmd = Cmd("tr", "[:lower:]", "[:upper:]", stdin=b"Hello world\\n")
        text = await cmd.output("utf-8")          # "HELLO WORLD\\n"

        cmd = Cmd("sleep", "100")
        await cmd.start()
        code = await cmd.kill()                    # SIGTERM, then SIGKILL

    Attributes:
        spec: the current CmdSpec
        pid: process id, 0 until a process was spawned
        exit_code: exit status of the last run; None until it exited,
            negative for "terminated by signal N"
    """

    def __init__(self, command: str, *args: str, **options: Any) -> None:
        if "args" in options:
            if args:
                raise TypeError("Cmd() got arguments both positionally and as args=")
            args = tuple(options.pop("args"))
        self._spec = CmdSpec(command, args, **options)
        self._transport: asyncio.SubprocessTransport | None = None
        self._completion = Completion()
        self._state = CmdState.NOT_STARTED
        self._pid = 0
        self._exit_code: int | None = None
        self._stdin_pumps: list[asyncio.Task[None]] = []
        self._stdin_sources: list[Reader] = []

    @classmethod
    def from_spec(cls, spec: CmdSpec) -> Cmd:
        cmd = cls(spec.command)
        cmd._spec = spec
        return cmd

    @property
    def spec(self) -> CmdSpec:
        return self._spec

    @property
    def state(self) -> CmdState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is CmdState.RUNNING

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    def configure(self, **changes: Any) -> CmdSpec:
        """Replace fields of the CmdSpec before starting.

        Raises:
            AlreadyRunningError: the process is running
        """
        if self.running:
            raise AlreadyRunningError("configure() called while command is running")
        self._spec = dataclasses.replace(self._spec, **changes)
        return self._spec

    async def start(self) -> Pipes | None:
        """Launch the process.

        Returns:
            the caller's ends of the configured pipes, or None when nothing
            was piped to the caller

        Raises:
            AlreadyRunningError: the previous process is still running
            SpawnError: the process could not be created
        """
        if self.running:
            raise AlreadyRunningError("start() called while command is running")

        spec = self._spec
        config = get_config()
        loop = asyncio.get_running_loop()

        stdin_arg, stdin_data, stdin_source = _stdin_plan(spec.stdin)
        stdout_arg, stdout_handoff = _output_plan("stdout", spec.stdout)
        stderr_arg, stderr_handoff = _output_plan("stderr", spec.stderr)
        kwargs = self._build_subprocess_kwargs(spec)
        extra = _ExtraFiles(spec.extra_files) if spec.extra_files else None

        self._exit_code = None
        completion = self._completion = Completion.create()

        # A descriptor-backed reader with nothing buffered goes straight to the child.
        attached_fd: int | None = None
        if stdin_source is not None and not IS_WINDOWS:
            attached_fd = stdin_source.detach_fd()
            if attached_fd is not None:
                stdin_arg = attached_fd

        protocol_factory = partial(
            _CmdProtocol, config.read_chunk_size, partial(self._on_exit, completion)
        )

        transport: asyncio.SubprocessTransport | None = None
        protocol: _CmdProtocol | None = None
        cause: BaseException | None = None
        try:
            if extra is not None:
                kwargs.update(extra.prepare())
            transport, protocol = await self._spawn(
                loop, protocol_factory, spec, stdin_arg, stdout_arg, stderr_arg, kwargs
            )
        except (OSError, subprocess.SubprocessError) as e:
            cause = e
        except Exception as e:
            # Invalid arguments (closed file, NUL byte): fail this run for waiters too.
            self._transport = None
            self._pid = 0
            self._state = CmdState.SPAWN_FAILED
            completion.reject(e)
            logger.debug(f"Spawn rejected command={spec.command}: {e!r}")
            raise
        finally:
            if extra is not None:
                extra.release(failed=transport is None)
            if attached_fd is not None:
                os.close(attached_fd)
                stdin_source.close()
                stdin_source = None

        pid = transport.get_pid() if transport is not None else None
        if not pid or protocol is None:
            self._transport = None
            self._pid = 0
            self._state = CmdState.SPAWN_FAILED
            err = guess_spawn_error(spec, cause)
            completion.reject(err)
            logger.debug(f"Spawn failed command={spec.command}: {err}")
            raise err from cause

        self._transport = transport
        self._pid = pid
        if not completion.done:
            # A very short-lived process may already have been reported.
            self._state = CmdState.RUNNING

        logger.debug(f"Started pid={pid} command={spec.command} cwd={spec.cwd or '.'}")

        for handoff in (stdout_handoff, stderr_handoff):
            if handoff is not None:
                handoff.close()

        stdin_writer: Writer | None = None
        stdin_pipe = transport.get_pipe_transport(0)
        if stdin_pipe is not None:
            stdin_writer = Writer(stdin_pipe, protocol.drain)  # type: ignore[arg-type]
            if stdin_data is not None:
                self._start_pump(completion, stdin_writer, self._feed_stdin(stdin_writer, stdin_data))
                stdin_writer = None
            elif stdin_source is not None:
                self._start_pump(
                    completion,
                    stdin_writer,
                    self._pump_stdin(stdin_writer, stdin_source),
                    stdin_source,
                )
                stdin_writer = None

        stdout = self._pipe_reader(transport, protocol, 1)
        stderr = self._pipe_reader(transport, protocol, 2)
        extra_readers = await extra.open_readers() if extra is not None else []

        if stdin_writer is None and stdout is None and stderr is None and not any(extra_readers):
            return None

        return Pipes(
            stdin=stdin_writer,
            stdout=stdout,
            stderr=stderr,
            extra_files=extra_readers,
        )

    async def run(self, timeout: float | None = None) -> int:
        """Start the process and wait for it; returns the exit code."""
        await self.start()
        return await self.wait(timeout)

    async def output(self, encoding: str | None = None, timeout: float | None = None) -> bytes | str:
        """Run the process and return its standard output.

        stdout is always piped; stderr is piped too unless it was
        configured. Both are captured in memory.

        Raises:
            NonZeroExitError: the process exited with a non-zero status
            WaitTimeoutError: the timeout expired
        """
        changes: dict[str, Any] = {"stdout": PIPE}
        if self._spec.stderr is None:
            changes["stderr"] = PIPE
        self.configure(**changes)

        pipes = await self.start()
        stdout_buf = DataBuffer()
        stderr_buf = DataBuffer()

        drains: list[asyncio.Task[None]] = []
        if pipes is not None and pipes.stdout is not None:
            drains.append(asyncio.create_task(_collect(pipes.stdout, stdout_buf)))
        if pipes is not None and pipes.stderr is not None:
            drains.append(asyncio.create_task(_collect(pipes.stderr, stderr_buf)))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None and timeout > 0 else None
        try:
            exit_code = await self.wait(timeout)
            if deadline is None:
                await asyncio.gather(*drains)
            else:
                # Descendants may hold the pipes open after the process exited.
                try:
                    await asyncio.wait_for(asyncio.gather(*drains), max(deadline - loop.time(), 0))
                except asyncio.TimeoutError:
                    logger.debug(f"Output still open at timeout pid={self._pid}")
                    raise WaitTimeoutError(timeout) from None
        finally:
            for task in drains:
                if not task.done():
                    task.cancel()
            if pipes is not None:
                for reader in (pipes.stdout, pipes.stderr):
                    if reader is not None:
                        reader.close()

        if exit_code != 0:
            raise NonZeroExitError(exit_code, _decode_stderr(stderr_buf.buffer()))

        data = stdout_buf.buffer()
        return data.decode(encoding) if encoding else data

    async def wait(self, timeout: float | None = None, kill_signal: SignalLike | None = None) -> int:
        """Wait for the process to exit.

        Args:
            timeout: seconds; None or <= 0 waits forever
            kill_signal: graceful signal for the kill sequence on timeout

        Returns:
            the exit code

        Raises:
            NotStartedError: start() was never called
            WaitTimeoutError: the timeout expired; the process was killed
        """
        completion = self._completion
        if timeout is None or timeout <= 0:
            return await completion.wait()

        try:
            return await asyncio.wait_for(completion.wait(), timeout)
        except asyncio.TimeoutError:
            pass

        logger.debug(f"Wait timeout reached; killing pid={self._pid}")
        await self.kill(kill_signal)
        raise WaitTimeoutError(timeout)

    def signal(self, sig: SignalLike, mode: SignalMode = "standard") -> bool:
        """Send a signal to the process.

        In "group" mode the process group is tried first so children of
        the process receive it too; failure falls back to the process
        itself unless strict group signalling is configured.

        Returns:
            True if the platform accepted the signal, False if the process
            is not running or could not be signalled

        Raises:
            NotStartedError: start() was never called
            UnsupportedSignalError: the platform cannot deliver ``sig``
            GroupSignalError: group delivery failed in strict mode
        """
        transport = self._checkproc()
        if mode not in ("standard", "group"):
            raise ValueError(f"unknown signal mode {mode!r}")
        signum = _resolve_signal(sig)

        if not self.running:
            return False

        if mode == "group" and not IS_WINDOWS:
            try:
                os.killpg(self._pid, signum)
                return True
            except OSError as e:
                # Not a group leader, or already gone.
                if get_config().strict_group_signal:
                    raise GroupSignalError(self._pid, e) from e
                logger.debug(f"killpg failed, falling back to pid={self._pid}: {e}")

        try:
            transport.send_signal(signum)
        except ValueError as e:
            raise UnsupportedSignalError(sig) from e
        except (ProcessLookupError, PermissionError) as e:
            logger.debug(f"Signal {signum.name} not delivered to pid={self._pid}: {e}")
            return False
        return True

    async def kill(
        self,
        sig: SignalLike | None = None,
        timeout: float | None = None,
        mode: SignalMode = "group",
    ) -> int:
        """Terminate the process and wait for it to exit.

        Sends ``sig`` (default SIGTERM); when the process is still alive
        after ``timeout`` seconds (default 0.5) it is sent SIGKILL. With
        ``timeout <= 0`` this waits for however long the process takes.

        Returns:
            the exit code; the last known one if the process was gone
        """
        self._checkproc()
        config = get_config()
        sig = config.kill_signal if sig is None else sig
        timeout = config.kill_timeout if timeout is None else timeout
        completion = self._completion

        if not self.signal(sig, mode):
            return self._exit_code if self._exit_code is not None else 0

        if timeout <= 0:
            return await completion.wait()

        try:
            return await asyncio.wait_for(completion.wait(), timeout)
        except asyncio.TimeoutError:
            pass

        logger.debug(f"Kill timeout reached; sending SIGKILL to pid={self._pid}")
        self._force_kill()
        return await completion.wait()

    def __repr__(self) -> str:
        return f"Cmd[{self._pid}]" if self._pid else "Cmd"

    # ------------------------------------------------------------------
    # internals

    def _checkproc(self) -> asyncio.SubprocessTransport:
        if self._transport is None:
            raise NotStartedError()
        return self._transport

    def _force_kill(self) -> None:
        if self._transport is None:
            return
        try:
            self._transport.kill()
        except ProcessLookupError:
            logger.debug(f"Process already exited pid={self._pid}")

    def _on_exit(self, completion: Completion, returncode: int | None) -> None:
        exit_code = exit_code_from_status(returncode)
        if completion is self._completion:
            self._exit_code = exit_code
            self._state = CmdState.EXITED
            for task in self._stdin_pumps:
                if not task.done():
                    task.cancel()
            self._stdin_pumps.clear()
            # Pumping is abandoned; stop the source from reading ahead.
            for source in self._stdin_sources:
                source.close()
            self._stdin_sources.clear()
        logger.debug(f"Exited pid={self._pid} status={exit_code}")
        completion.resolve(exit_code)

    def _build_subprocess_kwargs(self, spec: CmdSpec) -> dict[str, Any]:
        """Build platform-specific kwargs for the spawn call."""
        kwargs: dict[str, Any] = {"env": dict(spec.env)}

        if spec.cwd:
            kwargs["cwd"] = spec.cwd

        if IS_WINDOWS:
            if spec.windows_hide:
                kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        else:
            # New session -> own process group, so the tree can be signalled.
            kwargs["start_new_session"] = True

        return kwargs

    async def _spawn(
        self,
        loop: asyncio.AbstractEventLoop,
        protocol_factory: Any,
        spec: CmdSpec,
        stdin: Any,
        stdout: Any,
        stderr: Any,
        kwargs: dict[str, Any],
    ) -> tuple[asyncio.SubprocessTransport, _CmdProtocol]:
        if spec.shell is True:
            line = " ".join([spec.command, *spec.args])
            return await loop.subprocess_shell(
                protocol_factory, line, stdin=stdin, stdout=stdout, stderr=stderr, **kwargs
            )

        if spec.shell:
            line = " ".join([spec.command, *spec.args])
            if IS_WINDOWS:
                argv = [spec.shell, "/d", "/s", "/c", line]
            else:
                argv = [spec.shell, "-c", line]
        else:
            argv = [spec.command, *spec.args]

        return await loop.subprocess_exec(
            protocol_factory, *argv, stdin=stdin, stdout=stdout, stderr=stderr, **kwargs
        )

    def _pipe_reader(
        self,
        transport: asyncio.SubprocessTransport,
        protocol: _CmdProtocol,
        fd: int,
    ) -> Reader | None:
        stream = protocol.streams.get(fd)
        if stream is None:
            return None
        return Reader(stream, transport=transport.get_pipe_transport(fd))

    def _start_pump(
        self,
        completion: Completion,
        writer: Writer,
        coro: Any,
        source: Reader | None = None,
    ) -> None:
        if completion.done:
            coro.close()
            writer.close()
            if source is not None:
                source.close()
            return
        self._stdin_pumps.append(asyncio.create_task(coro))
        if source is not None:
            self._stdin_sources.append(source)

    async def _feed_stdin(self, writer: Writer, data: bytes) -> None:
        try:
            await writer.write(data)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"stdin closed before buffer was written pid={self._pid}: {e}")
        finally:
            writer.close()

    async def _pump_stdin(self, writer: Writer, source: Reader) -> None:
        try:
            async for chunk in source:
                await writer.write(chunk)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"stdin closed before source was drained pid={self._pid}: {e}")
        finally:
            writer.close()
            source.close()
