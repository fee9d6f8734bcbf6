"""
Error taxonomy for the reference server.

Errors that reach the peer derive from RPCError and carry a JSON-RPC error
code; everything else stays inside the process.
"""

from typing import Any, Dict, List, Optional, Union

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Server error range (-32000 to -32099)
REQUEST_TIMEOUT = -32001
SERVER_NOT_INITIALIZED = -32002

RequestId = Union[str, int, float]


class RPCError(Exception):
    """
    Base exception for errors reported to the peer as a JSON-RPC error object.

    Attributes:
        code: JSON-RPC error code
        message: Short, peer-safe description
        data: Optional structured detail
        request_id: Id of the offending request, when it is known
    """

    code = INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        data: Optional[Any] = None,
        request_id: Optional[RequestId] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.data = data
        self.request_id = request_id

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-RPC error object."""
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class ParseError(RPCError):
    """The inbound frame is not valid JSON or not a well-formed JSON-RPC envelope."""

    code = PARSE_ERROR


class InvalidRequestError(RPCError):
    """The request is well-formed but cannot be accepted (e.g. a duplicate id)."""

    code = INVALID_REQUEST


class MethodNotFoundError(RPCError):
    """No built-in method or registered tool has the requested name."""

    code = METHOD_NOT_FOUND

    def __init__(self, method: str, request_id: Optional[RequestId] = None) -> None:
        super().__init__(
            f"Method not found: {method}", data={"method": method}, request_id=request_id
        )
        self.method = method


class InvalidParamsError(RPCError):
    """Parameters failed schema validation."""

    code = INVALID_PARAMS

    def __init__(
        self,
        errors: List[str],
        message: str = "Invalid params",
        request_id: Optional[RequestId] = None,
    ) -> None:
        super().__init__(message, data={"errors": list(errors)}, request_id=request_id)
        self.errors = list(errors)


class InternalError(RPCError):
    """A handler raised; only its message is exposed, never the traceback."""

    code = INTERNAL_ERROR


class RequestTimeoutError(RPCError):
    """A handler did not finish before the configured deadline."""

    code = REQUEST_TIMEOUT


class NotInitializedError(RPCError):
    """A request other than initialize arrived before the handshake."""

    code = SERVER_NOT_INITIALIZED

    def __init__(self, method: str, request_id: Optional[RequestId] = None) -> None:
        super().__init__(
            "Server not initialized", data={"method": method}, request_id=request_id
        )


class DuplicateToolError(ValueError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool '{name}' is already registered")
        self.name = name


class ToolNotFoundError(LookupError):
    """No tool is registered under the given name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool '{name}' not found")
        self.name = name


class RegistryFrozenError(RuntimeError):
    """Registration attempted after the registry was frozen for serving."""


class TransportWriteError(Exception):
    """The output stream is closed or broken; the session cannot continue."""
