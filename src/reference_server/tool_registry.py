"""
Tool Registry for the reference server

Maps tool names to a schema plus a handler. Tools are registered once during
startup; the registry is then frozen and treated as read-only while requests
are being served, so concurrently suspended handlers never observe it change.

Key Features:
- Fail-fast registration (duplicate names are rejected immediately)
- Parameter validation reporting every failing field at once
- JSON Schema descriptors for capability advertisement
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from common.logging import get_logger
from .errors import DuplicateToolError, RegistryFrozenError, ToolNotFoundError

logger = get_logger(__name__)

ToolFunction = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class ToolParameterType(str, Enum):
    """Standard parameter types for MCP tools."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class ToolParameter(BaseModel):
    """Standard MCP tool parameter definition."""

    name: str
    type: ToolParameterType
    description: str = ""
    required: bool = False
    default: Optional[Any] = None
    enum: Optional[List[Any]] = None
    minimum: Optional[Union[int, float]] = None
    maximum: Optional[Union[int, float]] = None
    pattern: Optional[str] = None  # For string validation
    items: Optional["ToolParameter"] = None  # For array types


class ToolSchema(BaseModel):
    """Input schema and documentation for a tool."""

    description: str = ""
    parameters: List[ToolParameter] = Field(default_factory=list)
    allow_additional: bool = False

    def to_input_schema(self) -> Dict[str, Any]:
        """Convert the parameter list to JSON Schema format."""
        properties: Dict[str, Any] = {}
        required: List[str] = []

        for param in self.parameters:
            properties[param.name] = _parameter_schema(param)
            if param.required:
                required.append(param.name)

        schema: Dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            schema["required"] = required
        if not self.allow_additional:
            schema["additionalProperties"] = False
        return schema

    def validate_arguments(self, arguments: Dict[str, Any]) -> List[str]:
        """
        Validate tool arguments against the parameter list.

        Returns:
            Every validation failure found; empty when the arguments are valid
        """
        errors: List[str] = []
        known = {param.name: param for param in self.parameters}

        # Check required parameters
        for param in self.parameters:
            if param.required and param.name not in arguments:
                errors.append(f"{param.name}: required parameter is missing")

        # Check parameter types and constraints
        for param_name, value in arguments.items():
            param_def = known.get(param_name)
            if param_def is None:
                if not self.allow_additional:
                    errors.append(f"{param_name}: unknown parameter")
                continue

            type_error = _validate_value(param_def, value)
            if type_error:
                errors.append(f"{param_name}: {type_error}")

        return errors

    def apply_defaults(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of the arguments with declared defaults filled in."""
        validated = dict(arguments)
        for param in self.parameters:
            if param.name not in validated and param.default is not None:
                validated[param.name] = param.default
        return validated


class Tool(ToolSchema):
    """Tool definition as returned by a ToolHandler."""

    name: str


def _parameter_schema(param: ToolParameter) -> Dict[str, Any]:
    prop_schema: Dict[str, Any] = {"type": param.type.value}

    if param.description:
        prop_schema["description"] = param.description
    if param.enum:
        prop_schema["enum"] = param.enum
    if param.minimum is not None:
        prop_schema["minimum"] = param.minimum
    if param.maximum is not None:
        prop_schema["maximum"] = param.maximum
    if param.pattern:
        prop_schema["pattern"] = param.pattern
    if param.default is not None:
        prop_schema["default"] = param.default
    if param.type == ToolParameterType.ARRAY and param.items:
        prop_schema["items"] = _parameter_schema(param.items)

    return prop_schema


def _validate_value(param: ToolParameter, value: Any) -> Optional[str]:
    """
    Validate a single parameter value.

    Returns:
        None if valid, error message if invalid
    """
    if value is None:
        if param.required:
            return "is required but got null"
        return None

    if param.type == ToolParameterType.STRING:
        if not isinstance(value, str):
            return f"expected string, got {type(value).__name__}"
        if param.pattern and not re.match(param.pattern, value):
            return f"does not match pattern {param.pattern}"

    elif param.type in (ToolParameterType.INTEGER, ToolParameterType.NUMBER):
        expected = int if param.type == ToolParameterType.INTEGER else (int, float)
        # bool is an int subclass but never a valid number here
        if isinstance(value, bool) or not isinstance(value, expected):
            return f"expected {param.type.value}, got {type(value).__name__}"
        if param.minimum is not None and value < param.minimum:
            return f"must be >= {param.minimum}"
        if param.maximum is not None and value > param.maximum:
            return f"must be <= {param.maximum}"

    elif param.type == ToolParameterType.BOOLEAN:
        if not isinstance(value, bool):
            return f"expected boolean, got {type(value).__name__}"

    elif param.type == ToolParameterType.ARRAY:
        if not isinstance(value, list):
            return f"expected array, got {type(value).__name__}"
        if param.items:
            for i, item in enumerate(value):
                item_error = _validate_value(param.items, item)
                if item_error:
                    return f"item {i}: {item_error}"

    elif param.type == ToolParameterType.OBJECT:
        if not isinstance(value, dict):
            return f"expected object, got {type(value).__name__}"

    # Enum validation
    if param.enum and value not in param.enum:
        return f"must be one of {param.enum}, got {value!r}"

    return None


class ToolHandler(ABC):
    """Abstract base class for tool handlers."""

    @abstractmethod
    async def execute(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Execute the tool with validated arguments."""

    @abstractmethod
    def get_tool_definition(self) -> Tool:
        """Get the tool definition for this handler."""


@dataclass(frozen=True)
class ToolDescriptor:
    """A registered tool: immutable for the lifetime of the process."""

    name: str
    schema: ToolSchema
    handler: ToolFunction

    def validate(self, arguments: Optional[Dict[str, Any]]) -> List[str]:
        """Validate raw arguments, returning every failure."""
        return self.schema.validate_arguments(arguments or {})

    async def invoke(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Run the handler with already validated arguments."""
        return await self.handler(self.schema.apply_defaults(arguments))

    def describe(self) -> Dict[str, Any]:
        """Descriptor advertised to the peer."""
        return {
            "name": self.name,
            "description": self.schema.description,
            "inputSchema": self.schema.to_input_schema(),
        }


class ToolRegistry:
    """
    Registry mapping tool names to descriptors.

    All registration happens before the transport starts accepting messages;
    freeze() enforces that.
    """

    def __init__(self):
        """Initialize the tool registry."""
        self._descriptors: Dict[str, ToolDescriptor] = {}
        self._frozen = False

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, name: str, schema: ToolSchema, handler: ToolFunction) -> ToolDescriptor:
        """
        Register a tool.

        Args:
            name: Unique tool name
            schema: Parameter schema used for validation and advertisement
            handler: Coroutine function called with validated arguments

        Raises:
            DuplicateToolError: If the name is already registered
            RegistryFrozenError: If called after freeze()
        """
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register '{name}': registry is frozen")
        if name in self._descriptors:
            raise DuplicateToolError(name)

        descriptor = ToolDescriptor(name=name, schema=schema, handler=handler)
        self._descriptors[name] = descriptor

        logger.info(
            event="tool_registered",
            tool_name=name,
            parameters_count=len(schema.parameters),
        )
        return descriptor

    def register_tool_handler(self, handler: ToolHandler) -> ToolDescriptor:
        """Register a ToolHandler under the name from its tool definition."""
        tool = handler.get_tool_definition()
        descriptor = self.register(tool.name, tool, handler.execute)

        logger.debug(
            event="tool_handler_registered",
            tool_name=tool.name,
            handler_type=type(handler).__name__,
        )
        return descriptor

    def freeze(self) -> None:
        """Reject any further registration."""
        self._frozen = True
        logger.info(event="tool_registry_frozen", tools=list(self._descriptors))

    def resolve(self, name: str) -> ToolDescriptor:
        """
        Look up a tool by name.

        Raises:
            ToolNotFoundError: If no tool has that name
        """
        try:
            return self._descriptors[name]
        except KeyError:
            raise ToolNotFoundError(name) from None

    def list_descriptors(self) -> List[Dict[str, Any]]:
        """Descriptors of every registered tool, for capability advertisement."""
        return [descriptor.describe() for descriptor in self._descriptors.values()]
