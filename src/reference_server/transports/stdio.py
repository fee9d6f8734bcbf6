"""
Standard I/O Transport for MCP

Implements the stdio transport: the client spawns the server as a subprocess
and exchanges framed JSON-RPC messages over its stdin/stdout.

stdout is owned exclusively by this transport. Nothing else in the process
may write to it, otherwise the peer would see corrupted frames.

Reference: https://modelcontextprotocol.io/specification/2025-06-18/basic/transports
"""

import asyncio
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, AsyncIterator, BinaryIO, List, Optional

from common.logging import get_logger
from ..errors import TransportWriteError
from .framing import Framing, FrameTooLargeError, NewlineFraming

logger = get_logger(__name__)

READ_CHUNK_SIZE = 65536


class StdioTransport:
    """
    Byte-stream transport for MCP communication.

    Exposes exactly two operations to the rest of the server: messages(), an
    async iterator over inbound payloads that ends when the input stream
    closes, and send_message(), which writes one complete outbound frame.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: Any, framing: Optional[Framing] = None):
        """
        Initialize the transport.

        Args:
            reader: Stream the peer's messages arrive on
            writer: StreamWriter-like object (write/drain/is_closing/close)
            framing: Message framing, newline-delimited JSON by default
        """
        self.reader = reader
        self.writer = writer
        self.framing = framing or NewlineFraming()
        self.oversized_frames = 0
        self._write_lock = asyncio.Lock()
        self._broken = False

    @property
    def broken(self) -> bool:
        """Whether a write has failed; once broken, every send fails."""
        return self._broken

    async def messages(self) -> AsyncIterator[bytes]:
        """Yield raw message payloads until the input stream closes."""
        while True:
            try:
                payload = await self.framing.read_frame(self.reader)
            except FrameTooLargeError as e:
                self.oversized_frames += 1
                logger.warning(event="frame_discarded", reason=str(e))
                continue

            if payload is None:
                logger.info(event="stdin_closed")
                return

            yield payload

    async def send_message(self, payload: str) -> None:
        """
        Write one message as a single frame.

        Frames are written under a lock, so two responses never interleave.

        Raises:
            TransportWriteError: If the output stream is closed or broken
        """
        frame = self.framing.encode(payload)

        async with self._write_lock:
            if self._broken or self.writer.is_closing():
                raise TransportWriteError("Output stream is closed")
            try:
                self.writer.write(frame)
                await self.writer.drain()
            except (ConnectionError, OSError, RuntimeError) as e:
                self._broken = True
                logger.error(event="stdout_write_error", error=str(e))
                raise TransportWriteError(f"Error writing to output stream: {e}") from e

    async def close(self) -> None:
        """Close the output stream."""
        if not self.writer.is_closing():
            try:
                self.writer.close()
            except (OSError, RuntimeError) as e:
                logger.debug(event="stdout_close_error", error=str(e))

        logger.info(event="stdio_transport_stopped")


class _ThreadedStreamWriter:
    """StreamWriter stand-in for outputs the event loop cannot watch (regular files)."""

    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self._pending: List[bytes] = []
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stdio-writer")

    def write(self, data: bytes) -> None:
        self._pending.append(data)

    async def drain(self) -> None:
        data = b"".join(self._pending)
        self._pending.clear()
        if not data:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._write_blocking, data)

    def _write_blocking(self, data: bytes) -> None:
        self._stream.write(data)
        self._stream.flush()

    def is_closing(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True
        self._executor.shutdown(wait=True)


def _start_reader_thread(
    loop: asyncio.AbstractEventLoop, reader: asyncio.StreamReader, fd: int
) -> threading.Thread:
    """Feed a StreamReader from a blocking file descriptor on a daemon thread."""

    def pump() -> None:
        while True:
            try:
                chunk = os.read(fd, READ_CHUNK_SIZE)
            except OSError as e:
                logger.debug(event="stdin_read_error", error=str(e))
                chunk = b""
            try:
                if chunk:
                    loop.call_soon_threadsafe(reader.feed_data, chunk)
                else:
                    loop.call_soon_threadsafe(reader.feed_eof)
                    return
            except RuntimeError:
                # Event loop already closed
                return

    thread = threading.Thread(target=pump, name="stdio-reader", daemon=True)
    thread.start()
    return thread


async def open_stdio_transport(
    framing: Optional[Framing] = None,
    stdin: Optional[BinaryIO] = None,
    stdout: Optional[BinaryIO] = None,
) -> StdioTransport:
    """
    Bind a transport to the process's stdin/stdout.

    Pipes, sockets and terminals are watched directly by the event loop;
    regular files (e.g. input redirected from a file) fall back to a worker
    thread.
    """
    framing = framing or NewlineFraming()
    stdin = stdin if stdin is not None else sys.stdin.buffer
    stdout = stdout if stdout is not None else sys.stdout.buffer
    loop = asyncio.get_running_loop()

    reader = asyncio.StreamReader(limit=framing.max_message_bytes)
    try:
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), stdin)
        read_mode = "pipe"
    except (ValueError, OSError, NotImplementedError):
        _start_reader_thread(loop, reader, stdin.fileno())
        read_mode = "thread"

    try:
        write_transport, write_protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, stdout
        )
        writer: Any = asyncio.StreamWriter(write_transport, write_protocol, None, loop)
        write_mode = "pipe"
    except (ValueError, OSError, NotImplementedError):
        writer = _ThreadedStreamWriter(stdout)
        write_mode = "thread"

    logger.info(
        event="stdio_transport_started",
        framing=framing.name,
        read_mode=read_mode,
        write_mode=write_mode,
    )
    return StdioTransport(reader, writer, framing)
