"""
JSON-RPC 2.0 Protocol Implementation for MCP

This module implements the JSON-RPC 2.0 envelopes the reference server reads
and writes, plus the MCP payload models for the handshake and tool methods.

Reference: https://www.jsonrpc.org/specification
MCP Spec: https://spec.modelcontextprotocol.io/specification/2025-06-18/basic/
"""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, StrictFloat, StrictInt, StrictStr, ValidationError

from .errors import InvalidRequestError, ParseError, RequestId

# Ids are opaque correlation tokens: any JSON string or number
WireId = Union[StrictStr, StrictInt, StrictFloat]

# JSON-RPC version constant
JSONRPC_VERSION = "2.0"

# MCP protocol versions, newest first
LATEST_PROTOCOL_VERSION = "2025-06-18"
SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2025-03-26", "2024-11-05"]


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 error object."""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 request message."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: WireId
    method: StrictStr
    params: Optional[Dict[str, Any]] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 response message (success)."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: WireId
    result: Any


class JSONRPCErrorResponse(BaseModel):
    """JSON-RPC 2.0 response message (error)."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[WireId]
    error: JSONRPCError


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 notification message (no response expected)."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: StrictStr
    params: Optional[Dict[str, Any]] = None


# Union type for all JSON-RPC messages
JSONRPCMessage = Union[JSONRPCRequest, JSONRPCResponse, JSONRPCErrorResponse, JSONRPCNotification]


class MCPMethods:
    """Standard MCP method names handled by the dispatcher."""

    INITIALIZE = "initialize"
    INITIALIZED = "notifications/initialized"
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"
    CANCEL = "notifications/cancelled"


class MCPImplementation(BaseModel):
    """MCP implementation info."""

    name: str
    version: str


class MCPInitializeParams(BaseModel):
    """Parameters for initialize request."""

    protocolVersion: str
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    clientInfo: Optional[MCPImplementation] = None


class MCPInitializeResult(BaseModel):
    """Result for initialize response."""

    protocolVersion: str
    capabilities: Dict[str, Any]
    serverInfo: MCPImplementation
    tools: List[Dict[str, Any]] = Field(default_factory=list)
    instructions: Optional[str] = None


class MCPToolsListParams(BaseModel):
    """Parameters for tools/list request."""

    cursor: Optional[str] = None


class MCPToolsListResult(BaseModel):
    """Result for tools/list response."""

    tools: List[Dict[str, Any]]
    nextCursor: Optional[str] = None


class MCPToolsCallParams(BaseModel):
    """Parameters for tools/call request."""

    name: StrictStr
    arguments: Optional[Dict[str, Any]] = None


class MCPCancelledParams(BaseModel):
    """Parameters for notifications/cancelled."""

    requestId: WireId
    reason: Optional[str] = None


class MCPTextContent(BaseModel):
    """Text content for tool results."""

    type: Literal["text"] = "text"
    text: str


def _salvage_id(data: Dict[str, Any]) -> Optional[RequestId]:
    """Return the envelope's id if it is usable for correlation."""
    request_id = data.get("id")
    if isinstance(request_id, bool):
        return None
    if isinstance(request_id, (str, int, float)):
        return request_id
    return None


def validation_messages(error: ValidationError) -> List[str]:
    """Flatten a pydantic ValidationError into "field: problem" strings."""
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<envelope>"
        messages.append(f"{location}: {item['msg']}")
    return messages


class JSONRPCHandler:
    """Handler for JSON-RPC message processing."""

    @staticmethod
    def create_request(
        id: RequestId, method: str, params: Optional[Dict[str, Any]] = None
    ) -> JSONRPCRequest:
        """Create a JSON-RPC request."""
        return JSONRPCRequest(id=id, method=method, params=params)

    @staticmethod
    def create_response(id: RequestId, result: Any) -> JSONRPCResponse:
        """Create a JSON-RPC success response."""
        return JSONRPCResponse(id=id, result=result)

    @staticmethod
    def create_error_response(
        id: Optional[RequestId], code: int, message: str, data: Optional[Any] = None
    ) -> JSONRPCErrorResponse:
        """Create a JSON-RPC error response."""
        error = JSONRPCError(code=code, message=message, data=data)
        return JSONRPCErrorResponse(id=id, error=error)

    @staticmethod
    def create_notification(
        method: str, params: Optional[Dict[str, Any]] = None
    ) -> JSONRPCNotification:
        """Create a JSON-RPC notification."""
        return JSONRPCNotification(method=method, params=params)

    @staticmethod
    def parse_message(raw: Union[str, bytes]) -> JSONRPCMessage:
        """
        Parse a raw frame into a JSON-RPC message.

        Raises:
            ParseError: If the frame is not valid JSON or not a well-formed
                envelope; carries the envelope's id when one could be salvaged
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError(f"Parse error: {e}") from e

        if not isinstance(data, dict):
            raise ParseError("Parse error: expected a JSON object")

        request_id = _salvage_id(data)

        try:
            if "method" in data:
                if "id" in data:
                    return JSONRPCRequest.model_validate(data)
                return JSONRPCNotification.model_validate(data)
            if "id" in data:
                has_result = "result" in data
                has_error = "error" in data
                if has_result and not has_error:
                    return JSONRPCResponse.model_validate(data)
                if has_error and not has_result:
                    return JSONRPCErrorResponse.model_validate(data)
        except ValidationError as e:
            raise ParseError(
                "Parse error: invalid envelope",
                data={"errors": validation_messages(e)},
                request_id=request_id,
            ) from e

        raise ParseError("Parse error: not a JSON-RPC message", request_id=request_id)

    @staticmethod
    def parse_response(raw: Union[str, bytes]) -> Union[JSONRPCResponse, JSONRPCErrorResponse]:
        """Parse a frame that must be a response (used by clients and tests)."""
        message = JSONRPCHandler.parse_message(raw)
        if not isinstance(message, (JSONRPCResponse, JSONRPCErrorResponse)):
            raise InvalidRequestError(f"Expected a response, got {type(message).__name__}")
        return message

    @staticmethod
    def to_dict(message: JSONRPCMessage) -> Dict[str, Any]:
        """Convert a message to its wire dict, omitting absent optional members."""
        data = message.model_dump()
        if isinstance(message, JSONRPCErrorResponse) and data["error"].get("data") is None:
            data["error"].pop("data", None)
        if isinstance(message, (JSONRPCRequest, JSONRPCNotification)) and data["params"] is None:
            data.pop("params")
        return data

    @staticmethod
    def serialize(message: JSONRPCMessage) -> str:
        """Serialize a message to compact JSON text (one frame payload)."""
        return json.dumps(
            JSONRPCHandler.to_dict(message), separators=(",", ":"), ensure_ascii=False
        )
