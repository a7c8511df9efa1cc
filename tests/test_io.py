"""IO abstraction tests.

Test coverage:
- Reader size/EOF/close semantics over files, pipes and fed streams
- Chunk iteration and cancel scopes
- Writer backpressure and closed sinks
- DataBuffer accumulation
"""

from __future__ import annotations

import asyncio
import os
import socket
from pathlib import Path

import anyio
import pytest

from cmdexec.command import IS_WINDOWS
from cmdexec.io import (
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


# =============================================================================
# Helpers
# =============================================================================


class FakeTransport(asyncio.WriteTransport):
    """Write transport that records data and can be paused."""

    def __init__(self, extra: dict | None = None):
        super().__init__(extra)
        self.written: list[bytes] = []
        self._closing = False

    def write(self, data):
        self.written.append(bytes(data))

    def is_closing(self):
        return self._closing

    def close(self):
        self._closing = True


class Gate:
    """Drain callable that blocks until opened."""

    def __init__(self):
        self.event = asyncio.Event()

    async def __call__(self):
        await self.event.wait()


# =============================================================================
# Reader: file source
# =============================================================================


class TestFileReader:
    """Reader over a file pumped by a background task."""

    @pytest.mark.asyncio
    async def test_sized_reads_then_rest(self, fixtures_dir: Path):
        reader = create_file_reader(fixtures_dir / "bigtext")

        first = await reader.read(20)
        second = await reader.read(20)
        rest = await reader.read()

        assert len(first) == 20
        assert len(second) == 20
        assert len(rest) == 2509
        assert reader.closed
        assert first + second + rest == (fixtures_dir / "bigtext").read_bytes()

    @pytest.mark.asyncio
    async def test_close_early(self, fixtures_dir: Path):
        reader = create_file_reader(fixtures_dir / "bigtext")

        assert len(await reader.read(20)) == 20
        reader.close()

        assert await reader.read(20) == b""
        assert await reader.read() == b""
        assert reader.closed

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, fixtures_dir: Path):
        reader = create_file_reader(fixtures_dir / "testtext")
        reader.close()
        reader.close()
        assert await reader.read() == b""

    @pytest.mark.asyncio
    async def test_read_encoding(self, fixtures_dir: Path):
        reader = create_file_reader(fixtures_dir / "testtext")
        assert await reader.read("utf-8") == "HELLO, THIS IS AWESOME"

    @pytest.mark.asyncio
    async def test_sized_read_with_encoding(self, fixtures_dir: Path):
        reader = create_file_reader(fixtures_dir / "testtext")
        assert await reader.read(5, "utf-8") == "HELLO"
        assert await reader.read(2, "utf-8") == ", "

    @pytest.mark.asyncio
    async def test_sized_read_past_end(self, fixtures_dir: Path):
        reader = create_file_reader(fixtures_dir / "testtext")

        assert await reader.read(100) == b"HELLO, THIS IS AWESOME"
        assert reader.closed
        assert await reader.read(100) == b""

    @pytest.mark.asyncio
    async def test_iteration(self, fixtures_dir: Path):
        reader = create_file_reader(fixtures_dir / "bigtext", chunk_size=100)

        chunks = [chunk async for chunk in reader]

        assert all(len(chunk) <= 100 for chunk in chunks)
        assert b"".join(chunks) == (fixtures_dir / "bigtext").read_bytes()
        assert reader.closed

    @pytest.mark.asyncio
    async def test_missing_file(self, temp_workspace: Path):
        reader = create_file_reader(temp_workspace / "nope.txt")
        with pytest.raises(FileNotFoundError):
            await reader.read()

    @pytest.mark.asyncio
    async def test_no_descriptor(self, fixtures_dir: Path):
        reader = create_file_reader(fixtures_dir / "testtext")
        assert reader.fileno() is None
        assert reader.detach_fd() is None
        reader.close()

    @pytest.mark.asyncio
    async def test_pump_stays_near_reader(self, temp_workspace: Path):
        path = temp_workspace / "large.bin"
        data = os.urandom(4 * 1024 * 1024)
        path.write_bytes(data)
        reader = create_file_reader(path, chunk_size=1024)

        head = await reader.read(10)
        await asyncio.sleep(0.2)

        assert 0 < reader.buffered <= 3 * 1024
        assert head + await reader.read() == data
        assert reader.buffered == 0

    @pytest.mark.asyncio
    async def test_buffered_counts_unread_bytes(self, fixtures_dir: Path):
        reader = create_file_reader(fixtures_dir / "testtext")

        assert await reader.read(5) == b"HELLO"
        await asyncio.sleep(0.05)

        assert reader.buffered == len(b", THIS IS AWESOME")
        assert reader.detach_fd() is None
        reader.close()


# =============================================================================
# Reader: fed stream
# =============================================================================


class TestStreamReader:
    """Reader over an asyncio.StreamReader fed by hand."""

    @pytest.mark.asyncio
    async def test_sized_read_waits_for_enough_bytes(self):
        stream = asyncio.StreamReader()
        reader = create_reader(stream)

        task = asyncio.create_task(reader.read(4))
        stream.feed_data(b"ab")
        await asyncio.sleep(0.01)
        assert not task.done()

        stream.feed_data(b"cdef")
        assert await task == b"abcd"
        stream.feed_eof()
        assert await reader.read(10) == b"ef"

    @pytest.mark.asyncio
    async def test_leftover_stays_buffered(self):
        stream = asyncio.StreamReader()
        reader = create_reader(stream)
        stream.feed_data(b"abcdef")
        stream.feed_eof()

        assert await reader.read(4) == b"abcd"
        assert await reader.read(4) == b"ef"
        assert await reader.read(4) == b""

    @pytest.mark.asyncio
    async def test_close_unblocks_pending_read(self):
        stream = asyncio.StreamReader()
        reader = create_reader(stream)

        task = asyncio.create_task(reader.read(10))
        await asyncio.sleep(0.01)
        reader.close()

        assert await asyncio.wait_for(task, 1) == b""

    @pytest.mark.asyncio
    async def test_cancel_scope_stops_iteration(self):
        stream = asyncio.StreamReader()
        reader = create_reader(stream)
        stream.feed_data(b"data")

        scope = anyio.CancelScope()
        scope.cancel()
        chunks = [chunk async for chunk in reader.iter_chunks(cancel_scope=scope)]

        assert chunks == []
        assert not reader.closed

    @pytest.mark.asyncio
    async def test_repr(self):
        reader = create_reader(asyncio.StreamReader())
        assert repr(reader) == "<Reader open>"
        reader.close()
        assert repr(reader) == "<Reader closed>"


# =============================================================================
# Reader: OS pipe and socket
# =============================================================================


@pytest.mark.skipif(IS_WINDOWS, reason="connect_read_pipe needs a POSIX event loop")
class TestPipeReader:
    """Reader over the read end of an OS pipe."""

    @pytest.mark.asyncio
    async def test_reads_pipe_until_eof(self):
        read_end, write_end = os.pipe()
        os.write(write_end, b"through a pipe")
        os.close(write_end)

        reader = await open_pipe_reader(read_end)

        assert reader.fileno() == read_end
        assert await reader.read() == b"through a pipe"
        assert reader.closed

    @pytest.mark.asyncio
    async def test_close_releases_pipe(self):
        read_end, write_end = os.pipe()
        reader = await open_pipe_reader(read_end)

        reader.close()
        await asyncio.sleep(0.01)
        assert await reader.read() == b""
        os.close(write_end)

    @pytest.mark.asyncio
    async def test_detach_fd(self):
        read_end, write_end = os.pipe()
        reader = await open_pipe_reader(read_end)

        fd = reader.detach_fd()
        assert fd is not None and fd != read_end
        reader.close()

        os.write(write_end, b"x")
        os.close(write_end)
        try:
            assert os.read(fd, 1) == b"x"
        finally:
            os.close(fd)


class TestSocketStreams:
    """create_reader/create_writer over a socket pair."""

    @pytest.mark.asyncio
    async def test_write_data_then_read(self):
        left, right = socket.socketpair()
        _, left_writer = await asyncio.open_connection(sock=left)
        right_stream, right_writer = await asyncio.open_connection(sock=right)

        writer = create_writer(left_writer)
        reader = create_reader(right_stream, right_writer.transport)

        assert writer.fileno() is not None
        await write_data(writer, "hello ")
        await write_data(writer, b"socket")
        writer.close()

        assert await reader.read("utf-8") == "hello socket"
        assert reader.closed
        right_writer.close()

    @pytest.mark.asyncio
    async def test_foreign_stream_is_not_counted(self):
        left, right = socket.socketpair()
        stream, stream_writer = await asyncio.open_connection(sock=left)
        reader = create_reader(stream, stream_writer.transport)

        assert reader.buffered is None
        assert reader.detach_fd() is None

        reader.close()
        right.close()

    @pytest.mark.asyncio
    async def test_socket_reader(self):
        left, right = socket.socketpair()
        reader = await open_socket_reader(left)

        right.sendall(b"abcdef")
        right.shutdown(socket.SHUT_WR)

        assert await reader.read(2) == b"ab"
        assert reader.buffered == 4
        assert await reader.read() == b"cdef"
        assert reader.closed
        right.close()


# =============================================================================
# Writer
# =============================================================================


class TestWriter:
    """Writer backpressure and closed sinks."""

    @pytest.mark.asyncio
    async def test_write_waits_for_drain(self):
        transport = FakeTransport()
        gate = Gate()
        writer = Writer(transport, gate)

        task = asyncio.create_task(writer.write(b"payload"))
        await asyncio.sleep(0.01)

        assert transport.written == [b"payload"]
        assert not task.done()

        gate.event.set()
        await asyncio.wait_for(task, 1)

    @pytest.mark.asyncio
    async def test_write_str(self):
        transport = FakeTransport()
        await Writer(transport).write("héllo")
        assert transport.written == ["héllo".encode("utf-8")]

    @pytest.mark.asyncio
    async def test_write_after_close(self):
        transport = FakeTransport()
        writer = Writer(transport)
        writer.close()

        assert writer.closed
        with pytest.raises(BrokenPipeError):
            await writer.write(b"late")

    def test_fileno_without_descriptor(self):
        assert Writer(FakeTransport()).fileno() is None


# =============================================================================
# DataBuffer
# =============================================================================


class TestDataBuffer:
    def test_empty(self):
        buf = DataBuffer()
        assert len(buf) == 0
        assert buf.buffer() == b""

    def test_concatenates_in_order(self):
        buf = DataBuffer()
        assert buf.write(b"Hello ") is True
        buf.write(bytearray(b"wor"))
        buf.write(b"ld")

        assert len(buf) == 11
        assert buf.buffer() == b"Hello world"

    def test_single_chunk(self):
        buf = DataBuffer()
        buf.write(bytearray(b"one"))
        assert buf.buffer() == b"one"
        assert isinstance(buf.buffer(), bytes)


def test_reader_is_exported():
    import cmdexec

    assert cmdexec.Reader is Reader
