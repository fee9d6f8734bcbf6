"""
Message framing for byte-stream transports.

A framing turns a continuous byte stream into discrete message payloads and
back. Partial reads are absorbed by asyncio.StreamReader, which buffers until
a full frame is available.
"""

import asyncio
from typing import Optional

from common.logging import get_logger

logger = get_logger(__name__)


class FrameTooLargeError(Exception):
    """An inbound frame exceeded the configured size limit and was discarded."""


class Framing:
    """Base class for framings."""

    name = "abstract"

    def __init__(self, max_message_bytes: int = 4 * 1024 * 1024):
        self.max_message_bytes = max_message_bytes

    async def read_frame(self, reader: asyncio.StreamReader) -> Optional[bytes]:
        """
        Read the next frame payload.

        Returns:
            The payload, or None when the stream has ended

        Raises:
            FrameTooLargeError: If a frame is larger than max_message_bytes; the
                frame is skipped and the stream stays usable
        """
        raise NotImplementedError

    def encode(self, payload: str) -> bytes:
        """Encode one payload as a complete frame."""
        raise NotImplementedError


class NewlineFraming(Framing):
    """One JSON document per newline-terminated line (the MCP stdio convention)."""

    name = "newline"

    async def read_frame(self, reader: asyncio.StreamReader) -> Optional[bytes]:
        while True:
            try:
                line = await reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                # Stream ended; a final unterminated line is still a message
                line = e.partial
                if not line.strip():
                    return None
            except asyncio.LimitOverrunError as e:
                await self._discard_line(reader, e.consumed)
                raise FrameTooLargeError(
                    f"Line exceeds {self.max_message_bytes} bytes"
                ) from None

            if len(line) > self.max_message_bytes:
                raise FrameTooLargeError(f"Line exceeds {self.max_message_bytes} bytes")

            payload = line.rstrip(b"\r\n")
            if payload.strip():
                return payload
            # Blank line: keep reading

    async def _discard_line(self, reader: asyncio.StreamReader, consumed: int) -> None:
        """Drop buffered bytes up to and including the next newline."""
        await reader.readexactly(consumed)
        while True:
            try:
                await reader.readuntil(b"\n")
                return
            except asyncio.LimitOverrunError as e:
                await reader.readexactly(e.consumed)
            except asyncio.IncompleteReadError:
                return

    def encode(self, payload: str) -> bytes:
        # JSON text never contains a raw newline, so one line is one message
        return payload.encode("utf-8") + b"\n"


class ContentLengthFraming(Framing):
    """Header-delimited frames: "Content-Length: N" headers, a blank line, N bytes."""

    name = "content-length"

    async def read_frame(self, reader: asyncio.StreamReader) -> Optional[bytes]:
        content_length: Optional[int] = None
        headers_seen = False

        while True:
            try:
                header = await reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                if e.partial.strip() or headers_seen:
                    logger.warning(event="frame_truncated", partial_bytes=len(e.partial))
                return None

            header = header.strip()
            if not header:
                if not headers_seen:
                    # Stray blank line between frames
                    continue
                break

            headers_seen = True
            name, _, value = header.decode("ascii", errors="replace").partition(":")
            if name.strip().lower() == "content-length":
                try:
                    content_length = int(value.strip())
                except ValueError:
                    content_length = None
                if content_length is not None and content_length < 0:
                    content_length = None
                if content_length is None:
                    logger.warning(event="invalid_content_length", header=value.strip())

        if content_length is None:
            # The body length is unknown, so the next frame boundary cannot be found
            logger.warning(event="frame_length_unknown")
            return None

        if content_length > self.max_message_bytes:
            await self._skip(reader, content_length)
            raise FrameTooLargeError(
                f"Frame of {content_length} bytes exceeds {self.max_message_bytes} bytes"
            )

        try:
            return await reader.readexactly(content_length)
        except asyncio.IncompleteReadError as e:
            logger.warning(
                event="frame_truncated", expected=content_length, received=len(e.partial)
            )
            return None

    async def _skip(self, reader: asyncio.StreamReader, count: int) -> None:
        while count > 0:
            chunk = await reader.read(min(count, 65536))
            if not chunk:
                return
            count -= len(chunk)

    def encode(self, payload: str) -> bytes:
        body = payload.encode("utf-8")
        return f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body


def get_framing(name: str, max_message_bytes: int = 4 * 1024 * 1024) -> Framing:
    """Build a framing by its configured name."""
    framings = {
        NewlineFraming.name: NewlineFraming,
        ContentLengthFraming.name: ContentLengthFraming,
    }
    try:
        return framings[name](max_message_bytes)
    except KeyError:
        raise ValueError(f"Unknown framing: {name}") from None
