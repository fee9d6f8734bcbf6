"""
Tests for message framing and the stdio transport.
"""

import asyncio

import pytest

from conftest import CollectingWriter
from reference_server.errors import TransportWriteError
from reference_server.transports.framing import (
    ContentLengthFraming,
    FrameTooLargeError,
    NewlineFraming,
    get_framing,
)
from reference_server.transports.stdio import StdioTransport


def feed(*chunks, eof=True, limit=2 ** 16):
    reader = asyncio.StreamReader(limit=limit)
    for chunk in chunks:
        reader.feed_data(chunk)
    if eof:
        reader.feed_eof()
    return reader


async def collect(transport):
    return [payload async for payload in transport.messages()]


class TestNewlineFraming:
    """Test newline-delimited framing."""

    @pytest.mark.asyncio
    async def test_reads_lines(self):
        """Test each line is one message and EOF ends the stream."""
        framing = NewlineFraming()
        reader = feed(b'{"a":1}\n{"b":2}\n')

        assert await framing.read_frame(reader) == b'{"a":1}'
        assert await framing.read_frame(reader) == b'{"b":2}'
        assert await framing.read_frame(reader) is None

    @pytest.mark.asyncio
    async def test_crlf_and_blank_lines(self):
        """Test CRLF terminators are stripped and blank lines skipped."""
        framing = NewlineFraming()
        reader = feed(b'\r\n\n{"a":1}\r\n   \n{"b":2}\n')

        assert await framing.read_frame(reader) == b'{"a":1}'
        assert await framing.read_frame(reader) == b'{"b":2}'
        assert await framing.read_frame(reader) is None

    @pytest.mark.asyncio
    async def test_unterminated_final_line(self):
        """Test a last message without a newline is still delivered."""
        framing = NewlineFraming()
        reader = feed(b'{"a":1}')

        assert await framing.read_frame(reader) == b'{"a":1}'
        assert await framing.read_frame(reader) is None

    @pytest.mark.asyncio
    async def test_partial_reads_are_buffered(self):
        """Test a message split across reads is reassembled."""
        framing = NewlineFraming()
        reader = asyncio.StreamReader()

        async def trickle():
            for chunk in (b'{"jso', b'nrpc":"2', b'.0"}', b"\n"):
                await asyncio.sleep(0.01)
                reader.feed_data(chunk)
            reader.feed_eof()

        feeder = asyncio.ensure_future(trickle())
        assert await framing.read_frame(reader) == b'{"jsonrpc":"2.0"}'
        await feeder

    @pytest.mark.asyncio
    async def test_oversized_line_is_skipped(self):
        """Test an overlong line is discarded and the next one still read."""
        framing = NewlineFraming(max_message_bytes=32)
        reader = feed(b"x" * 200 + b"\n" + b'{"ok":1}\n', limit=32)

        with pytest.raises(FrameTooLargeError):
            await framing.read_frame(reader)
        assert await framing.read_frame(reader) == b'{"ok":1}'

    def test_encode(self):
        """Test encoding appends exactly one newline."""
        assert NewlineFraming().encode('{"a":1}') == b'{"a":1}\n'


class TestContentLengthFraming:
    """Test Content-Length header framing."""

    @pytest.mark.asyncio
    async def test_reads_frames(self):
        """Test header-delimited frames are read back to back."""
        framing = ContentLengthFraming()
        reader = feed(
            b'Content-Length: 7\r\n\r\n{"a":1}'
            b'Content-Type: application/json\r\nContent-Length: 7\r\n\r\n{"b":2}'
        )

        assert await framing.read_frame(reader) == b'{"a":1}'
        assert await framing.read_frame(reader) == b'{"b":2}'
        assert await framing.read_frame(reader) is None

    @pytest.mark.asyncio
    async def test_oversized_frame_is_skipped(self):
        """Test a frame over the limit is consumed and the next one read."""
        framing = ContentLengthFraming(max_message_bytes=8)
        reader = feed(b"Content-Length: 20\r\n\r\n" + b"y" * 20 + b"Content-Length: 2\r\n\r\n{}")

        with pytest.raises(FrameTooLargeError):
            await framing.read_frame(reader)
        assert await framing.read_frame(reader) == b"{}"

    @pytest.mark.asyncio
    async def test_truncated_frame_ends_stream(self):
        """Test a body cut short by EOF ends the stream."""
        framing = ContentLengthFraming()
        reader = feed(b'Content-Length: 50\r\n\r\n{"a":')

        assert await framing.read_frame(reader) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "headers",
        [
            b"Content-Length: abc\r\n\r\n",
            b"Content-Length: -5\r\n\r\n",
            b"Content-Type: application/json\r\n\r\n",
        ],
    )
    async def test_unusable_length_ends_stream(self, headers):
        """Test a header block without a usable length ends the stream."""
        framing = ContentLengthFraming()
        reader = feed(headers + b'{"a":1}' + b'Content-Length: 2\r\n\r\n{}')

        assert await framing.read_frame(reader) is None

    @pytest.mark.asyncio
    async def test_unusable_length_stops_transport(self):
        """Test the transport yields nothing after a frame of unknown length."""
        transport = StdioTransport(
            feed(
                b'Content-Length: 7\r\n\r\n{"a":1}'
                b'Content-Length: x\r\n\r\n{"b":2}'
                b'Content-Length: 7\r\n\r\n{"c":3}'
            ),
            CollectingWriter(),
            framing=ContentLengthFraming(),
        )

        assert await collect(transport) == [b'{"a":1}']

    def test_encode_counts_bytes(self):
        """Test the header counts encoded bytes, not characters."""
        assert ContentLengthFraming().encode('"é"') == b'Content-Length: 4\r\n\r\n"\xc3\xa9"'


def test_get_framing():
    """Test framings are looked up by configured name."""
    assert isinstance(get_framing("newline"), NewlineFraming)
    assert get_framing("content-length", 1024).max_message_bytes == 1024

    with pytest.raises(ValueError):
        get_framing("xml")


class TestStdioTransport:
    """Test the stdio transport."""

    @pytest.mark.asyncio
    async def test_messages_until_eof(self):
        """Test messages() yields every payload and stops at end of input."""
        transport = StdioTransport(feed(b'{"a":1}\n{"b":2}\n'), CollectingWriter())

        assert await collect(transport) == [b'{"a":1}', b'{"b":2}']

    @pytest.mark.asyncio
    async def test_oversized_frames_counted(self):
        """Test discarded frames are counted and do not end the stream."""
        transport = StdioTransport(
            feed(b"z" * 100 + b"\n" + b'{"a":1}\n', limit=16),
            CollectingWriter(),
            NewlineFraming(max_message_bytes=16),
        )

        assert await collect(transport) == [b'{"a":1}']
        assert transport.oversized_frames == 1

    @pytest.mark.asyncio
    async def test_send_message_writes_one_frame(self):
        """Test a payload is written as one complete frame."""
        writer = CollectingWriter()
        transport = StdioTransport(feed(), writer)

        await transport.send_message('{"jsonrpc":"2.0","id":1,"result":{}}')

        assert writer.writes == [b'{"jsonrpc":"2.0","id":1,"result":{}}\n']

    @pytest.mark.asyncio
    async def test_concurrent_sends_do_not_interleave(self):
        """Test concurrent writers each produce an intact frame."""
        writer = CollectingWriter()
        transport = StdioTransport(feed(), writer)

        await asyncio.gather(*(transport.send_message(f'{{"n":{i}}}') for i in range(20)))

        assert sorted(m["n"] for m in writer.messages()) == list(range(20))
        assert all(chunk.endswith(b"\n") and chunk.count(b"\n") == 1 for chunk in writer.writes)

    @pytest.mark.asyncio
    async def test_write_failure_breaks_transport(self):
        """Test a failed write raises TransportWriteError and poisons the transport."""
        writer = CollectingWriter(fail=True)
        transport = StdioTransport(feed(), writer)

        with pytest.raises(TransportWriteError):
            await transport.send_message("{}")
        assert transport.broken

        writer.fail = False
        with pytest.raises(TransportWriteError):
            await transport.send_message("{}")
        assert writer.writes == []

    @pytest.mark.asyncio
    async def test_send_after_close(self):
        """Test sending on a closed transport fails cleanly."""
        writer = CollectingWriter()
        transport = StdioTransport(feed(), writer)
        await transport.close()

        assert writer.closed
        with pytest.raises(TransportWriteError):
            await transport.send_message("{}")
