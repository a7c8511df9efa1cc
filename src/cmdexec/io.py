"""Pull-style readers and flow-controlled writers over asyncio streams.

cmdexec io module

This module provides:
- Reader: size-bounded or to-EOF reads over a live byte source, plus chunk
  iteration over the same forward-only cursor
- Writer: write() that waits for the sink to drain when it is paused
- DataBuffer: append-only capture sink
- Factories for process pipes, OS pipes, files and sockets

Key design points:
- The push side (protocol callbacks or a pump task) feeds an
  asyncio.StreamReader; Reader only pulls from it
- Seeing end-of-stream releases the underlying transport
- close() never raises and never leaves a read hanging
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path

import aiofiles
import anyio

from .config import get_config

__all__ = [
    "Reader",
    "Writer",
    "DataBuffer",
    "create_reader",
    "create_writer",
    "create_file_reader",
    "open_pipe_reader",
    "open_socket_reader",
    "write_data",
]

logger = logging.getLogger(__name__)

_EMPTY = b""


class TrackedStreamReader(asyncio.StreamReader):
    """StreamReader that counts the fed bytes not yet read.

    Only read() consumes; Reader never calls the line-oriented methods.
    """

    def __init__(self, limit: int) -> None:
        super().__init__(limit=limit)
        self.chunk_limit = limit
        self.pending = 0

    def feed_data(self, data: bytes) -> None:
        super().feed_data(data)
        self.pending += len(data)

    async def read(self, n: int = -1) -> bytes:
        if n < 0:
            # The base class would re-enter read() and count twice.
            blocks: list[bytes] = []
            while True:
                block = await self.read(self.chunk_limit)
                if not block:
                    break
                blocks.append(block)
            return _EMPTY.join(blocks)

        data = await super().read(n)
        self.pending -= len(data)
        return data


class _PumpFlow(asyncio.ReadTransport):
    """Pause/resume switch a StreamReader drives for a task-fed source.

    StreamReader pauses its transport above twice its limit and resumes it
    once drained to the limit; the pump awaits wait_resumed() between chunks.
    """

    def __init__(self) -> None:
        super().__init__()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._closing = False

    def is_reading(self) -> bool:
        return self._resumed.is_set()

    def pause_reading(self) -> None:
        self._resumed.clear()

    def resume_reading(self) -> None:
        self._resumed.set()

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        self._closing = True
        self._resumed.set()

    async def wait_resumed(self) -> None:
        await self._resumed.wait()


class Reader:
    """Pull-style reader over a push-fed ``asyncio.StreamReader``.

    Example:
        cmd = Cmd("cat", "big.log", stdout="pipe")
        pipes = await cmd.start()

        header = await pipes.stdout.read(20)       # exactly 20 bytes unless EOF
        rest = await pipes.stdout.read("utf-8")    # everything else, decoded

    Attributes:
        stream: the underlying asyncio.StreamReader
    """

    def __init__(
        self,
        stream: asyncio.StreamReader,
        *,
        transport: asyncio.BaseTransport | None = None,
        pump: asyncio.Task[None] | None = None,
    ) -> None:
        self.stream = stream
        self._transport = transport
        self._pump = pump
        self._closed = False
        self._ended = False

    @property
    def closed(self) -> bool:
        """True once the reader was closed or reached end-of-stream."""
        return self._closed or self._ended

    async def read(
        self,
        size: int | str | None = None,
        encoding: str | None = None,
    ) -> bytes | str:
        """Read from the source.

        Args:
            size: maximum number of bytes; waits until that many are
                available or the source ends. ``None`` or a negative value
                reads to end-of-stream. A string is taken as ``encoding``.
            encoding: decode the result to text

        Returns:
            bytes, or str when an encoding was given. Empty once the reader
            is closed or exhausted.
        """
        if isinstance(size, str):
            encoding, size = size, None

        if size is None or size < 0:
            data = await self._read_all()
        else:
            data = await self._read_size(size)

        return data.decode(encoding) if encoding else data

    async def _read_all(self) -> bytes:
        if self._closed:
            return _EMPTY
        data = await self.stream.read()
        if self._closed:
            return _EMPTY
        self._mark_ended()
        return data

    async def _read_size(self, size: int) -> bytes:
        chunks: list[bytes] = []
        remaining = size

        while remaining > 0:
            if self._closed:
                return _EMPTY
            chunk = await self.stream.read(remaining)
            if self._closed:
                return _EMPTY
            if not chunk:
                self._mark_ended()
                break
            chunks.append(chunk)
            remaining -= len(chunk)

        if len(chunks) == 1:
            return chunks[0]
        return _EMPTY.join(chunks)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.iter_chunks()

    async def iter_chunks(
        self,
        chunk_size: int | None = None,
        *,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> AsyncIterator[bytes]:
        """Yield chunks as they arrive.

        Shares the cursor with read(); mixing both sees whichever ordering
        the source delivers.

        Args:
            chunk_size: maximum chunk size (defaults to the configured one)
            cancel_scope: stop iterating once this scope is cancelled
        """
        chunk_size = chunk_size or get_config().read_chunk_size

        while not self._closed:
            if cancel_scope is not None and cancel_scope.cancel_called:
                return
            chunk = await self.stream.read(chunk_size)
            if self._closed:
                return
            if not chunk:
                self._mark_ended()
                return
            yield chunk

    def fileno(self) -> int | None:
        """Descriptor behind the source, if its transport exposes one."""
        if self._transport is None:
            return None
        for key in ("pipe", "socket"):
            obj = self._transport.get_extra_info(key)
            if obj is not None:
                return obj.fileno()
        return None

    @property
    def buffered(self) -> int | None:
        """Bytes received but not yet read, or None for a foreign stream."""
        if isinstance(self.stream, TrackedStreamReader):
            return self.stream.pending
        return None

    def detach_fd(self) -> int | None:
        """Hand the source over to a consumer that reads the descriptor itself.

        Stops the transport from reading and returns a duplicate of its
        descriptor, owned by the caller. Returns None when there is no
        descriptor, or when bytes are (or may be) buffered here.
        """
        if self.closed or self.buffered != 0:
            return None
        fd = self.fileno()
        if fd is None:
            return None
        pause_reading = getattr(self._transport, "pause_reading", None)
        if pause_reading is not None:
            pause_reading()
        return os.dup(fd)

    def _mark_ended(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._release()

    def _release(self) -> None:
        if self._transport is not None and not self._transport.is_closing():
            self._transport.close()

    def close(self) -> None:
        """Release the source; pending and later reads return empty."""
        if self._closed:
            return
        self._closed = True

        if self._pump is not None and not self._pump.done():
            # The pump feeds EOF when it unwinds.
            self._pump.cancel()
        elif self._transport is not None:
            # connection_lost feeds EOF.
            self._release()
        else:
            self.stream.feed_eof()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<Reader {state}>"


class Writer:
    """Byte sink with backpressure.

    write() hands data to the transport and then awaits ``drain``, which
    blocks while the transport has paused writing.
    """

    def __init__(
        self,
        transport: asyncio.WriteTransport,
        drain: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.transport = transport
        self._drain = drain

    @property
    def closed(self) -> bool:
        return self.transport.is_closing()

    def fileno(self) -> int | None:
        """Descriptor behind the transport, if it exposes one."""
        for key in ("pipe", "socket"):
            obj = self.transport.get_extra_info(key)
            if obj is not None:
                return obj.fileno()
        return None

    async def write(self, data: bytes | bytearray | memoryview | str, encoding: str = "utf-8") -> None:
        """Write data and wait until the sink is ready for more.

        Raises:
            BrokenPipeError: the sink is closed
        """
        if isinstance(data, str):
            data = data.encode(encoding)
        if self.transport.is_closing():
            raise BrokenPipeError("stream not writable")
        self.transport.write(data)
        if self._drain is not None:
            await self._drain()

    def close(self) -> None:
        if not self.transport.is_closing():
            self.transport.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<Writer {state}>"


class DataBuffer:
    """Append-only collector of byte chunks."""

    def __init__(self) -> None:
        self._chunks: list[bytes] = []
        self._size = 0

    def write(self, chunk: bytes) -> bool:
        self._chunks.append(chunk)
        self._size += len(chunk)
        return True

    def __len__(self) -> int:
        return self._size

    def buffer(self) -> bytes:
        """Concatenate all chunks in arrival order."""
        if not self._chunks:
            return _EMPTY
        if len(self._chunks) == 1:
            return bytes(self._chunks[0])
        return _EMPTY.join(self._chunks)


def create_reader(
    stream: asyncio.StreamReader,
    transport: asyncio.BaseTransport | None = None,
) -> Reader:
    """Wrap an existing StreamReader, e.g. one from asyncio.open_connection().

    Bytes buffered in a foreign stream cannot be counted, so such a reader
    is always pumped when used as stdin; open_socket_reader() can be
    attached directly.
    """
    return Reader(stream, transport=transport)


def create_writer(stream_writer: asyncio.StreamWriter) -> Writer:
    """Wrap an asyncio.StreamWriter."""
    return Writer(stream_writer.transport, stream_writer.drain)


async def write_data(writer: Writer, data: bytes | bytearray | memoryview | str) -> None:
    """Write data to writer, honoring backpressure."""
    await writer.write(data)


async def _pump_file(
    path: str,
    stream: asyncio.StreamReader,
    flow: _PumpFlow,
    chunk_size: int,
) -> None:
    try:
        async with aiofiles.open(path, "rb") as fh:
            while True:
                await flow.wait_resumed()
                chunk = await fh.read(chunk_size)
                if not chunk:
                    break
                stream.feed_data(chunk)
    except asyncio.CancelledError:
        stream.feed_eof()
        raise
    except OSError as e:
        logger.debug(f"File pump failed path={path}: {e}")
        stream.set_exception(e)
        return
    finally:
        flow.close()

    stream.feed_eof()


def create_file_reader(path: str | os.PathLike[str], chunk_size: int | None = None) -> Reader:
    """Read a file through a Reader.

    Must be called with a running event loop; the file is pumped by a
    background task that stays at most a few chunks ahead of the reader.
    """
    chunk_size = chunk_size or get_config().read_chunk_size
    stream = TrackedStreamReader(limit=chunk_size)
    flow = _PumpFlow()
    stream.set_transport(flow)
    filename = os.path.expanduser(str(Path(path)))
    pump = asyncio.get_running_loop().create_task(_pump_file(filename, stream, flow, chunk_size))
    return Reader(stream, pump=pump)


async def open_pipe_reader(fd: int) -> Reader:
    """Take ownership of the read end of an OS pipe."""
    loop = asyncio.get_running_loop()
    stream = TrackedStreamReader(limit=get_config().read_chunk_size)
    protocol = asyncio.StreamReaderProtocol(stream)
    transport, _ = await loop.connect_read_pipe(
        lambda: protocol,
        open(fd, "rb", buffering=0),
    )
    return Reader(stream, transport=transport)


async def open_socket_reader(sock: socket.socket) -> Reader:
    """Take ownership of a connected socket for reading."""
    loop = asyncio.get_running_loop()
    stream = TrackedStreamReader(limit=get_config().read_chunk_size)
    protocol = asyncio.StreamReaderProtocol(stream)
    transport, _ = await loop.create_connection(lambda: protocol, sock=sock)
    return Reader(stream, transport=transport)
