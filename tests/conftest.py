"""
Shared fixtures for the reference server tests.

Streams are built inside the async tests themselves so every StreamReader
belongs to the running test loop.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from common.event_log import EventLog
from reference_server.dispatcher import Dispatcher
from reference_server.tool_registry import (
    ToolParameter,
    ToolParameterType,
    ToolRegistry,
    ToolSchema,
)
from reference_server.tools import PingTool
from reference_server.transports.stdio import StdioTransport

INIT = {
    "jsonrpc": "2.0",
    "id": 0,
    "method": "initialize",
    "params": {
        "protocolVersion": "2025-06-18",
        "capabilities": {},
        "clientInfo": {"name": "test-client", "version": "1.0.0"},
    },
}


class CollectingWriter:
    """StreamWriter stand-in that keeps every write in memory."""

    def __init__(self, fail: bool = False):
        self.writes: List[bytes] = []
        self.fail = fail
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.fail:
            raise BrokenPipeError("Broken pipe")
        self.writes.append(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    def messages(self) -> List[Dict[str, Any]]:
        """Every newline-framed message written so far, decoded."""
        lines = b"".join(self.writes).splitlines()
        return [json.loads(line) for line in lines if line.strip()]


def encode(message: Any) -> bytes:
    if isinstance(message, bytes):
        return message
    return json.dumps(message).encode("utf-8") + b"\n"


def make_reader(*messages: Any, eof: bool = True) -> asyncio.StreamReader:
    """StreamReader pre-loaded with newline-framed messages (raw bytes pass through)."""
    reader = asyncio.StreamReader()
    for message in messages:
        reader.feed_data(encode(message))
    if eof:
        reader.feed_eof()
    return reader


def make_transport(*messages: Any, eof: bool = True, writer: Optional[CollectingWriter] = None):
    writer = writer or CollectingWriter()
    return StdioTransport(make_reader(*messages, eof=eof), writer), writer


def by_id(messages: List[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
    return {message["id"]: message for message in messages}


async def wait_for_messages(writer: CollectingWriter, count: int, timeout: float = 2.0) -> None:
    """Poll until the writer has seen at least ``count`` messages."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(writer.messages()) < count:
        if loop.time() > deadline:
            raise AssertionError(f"Expected {count} messages, got {writer.messages()}")
        await asyncio.sleep(0.01)


async def slow_tool(arguments: Dict[str, Any]) -> Dict[str, Any]:
    await asyncio.sleep(arguments.get("delay", 0.2))
    return {"content": [{"type": "text", "text": "slow done"}]}


async def exploding_tool(arguments: Dict[str, Any]) -> Dict[str, Any]:
    raise RuntimeError("boom")


SLOW_SCHEMA = ToolSchema(
    description="Sleeps before answering",
    parameters=[ToolParameter(name="delay", type=ToolParameterType.NUMBER, minimum=0)],
)


@pytest.fixture
def event_log(tmp_path):
    """Opened event log in a temporary directory."""
    log = EventLog(tmp_path / "events.log", fsync=False)
    log.open()
    yield log
    log.close()


@pytest.fixture
def registry(event_log):
    """Frozen registry holding ping plus slow and failing test tools."""
    registry = ToolRegistry()
    registry.register_tool_handler(PingTool(event_log))
    registry.register("slow", SLOW_SCHEMA, slow_tool)
    registry.register("explode", ToolSchema(description="Always fails"), exploding_tool)
    registry.freeze()
    return registry


@pytest.fixture
def dispatcher(registry, event_log):
    return Dispatcher(registry, event_log)


def read_log(event_log: EventLog) -> str:
    return event_log.path.read_text(encoding="utf-8")
