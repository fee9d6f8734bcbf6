"""
Ping Tool

Minimal health-check tool: replies with "Pong!" and echoes back the optional
message it was given, recording every call in the event log.
"""

from typing import Any, Dict

from common.event_log import EventLog
from common.logging import get_logger
from ..jsonrpc import MCPTextContent
from ..tool_registry import Tool, ToolHandler, ToolParameter, ToolParameterType

logger = get_logger(__name__)

NO_MESSAGE = "<no message>"


class PingTool(ToolHandler):
    """Health-check tool used to verify the server is wired up end to end."""

    def __init__(self, event_log: EventLog):
        """Initialize the ping tool."""
        self.event_log = event_log

    def get_tool_definition(self) -> Tool:
        """Get the standard MCP tool definition."""
        return Tool(
            name="ping",
            description="Simple health check. Replies with Pong and echoes the optional message.",
            parameters=[
                ToolParameter(
                    name="message",
                    type=ToolParameterType.STRING,
                    description="Message to echo back",
                    required=False,
                ),
            ],
        )

    async def execute(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """
        Execute the ping tool.

        Args:
            arguments: Tool arguments containing an optional 'message'

        Returns:
            Tool result with a single text content block
        """
        message = arguments.get("message") or NO_MESSAGE

        logger.debug(event="ping_tool_executed", message=message)
        await self.event_log.record(f"Ping received: {message}")

        return {"content": [MCPTextContent(text=f"Pong! Message: {message}").model_dump()]}
