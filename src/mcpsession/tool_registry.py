"""
Tool Registry

Handler collaborator that serves tools/list and tools/call. It is invoked only
after the authorization guard has confirmed the ``tools`` capability, so it
never checks capabilities itself; it reports "unknown tool" as a domain error
(``ToolNotFoundError``), which is a different thing from the capability being
absent.

Key Features:
- Runtime tool registration and discovery
- Parameter validation and type checking
- Cursor-based pagination for tools/list
- Change listeners (used to emit notifications/tools/list_changed)
"""

import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from common.logging import get_logger
from .errors import InvalidParamsError, ToolNotFoundError
from .handlers import HandlerRegistry
from .jsonrpc import (
    MCPMethods,
    MCPTextContent,
    MCPToolsCallParams,
    MCPToolsCallResult,
    MCPToolsListResult,
)

logger = get_logger(__name__)

# Pagination constants
DEFAULT_PAGE_SIZE = 50


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
    description: str
    required: bool = False
    default: Optional[Any] = None
    enum: Optional[List[Any]] = None
    minimum: Optional[Union[int, float]] = None
    maximum: Optional[Union[int, float]] = None
    pattern: Optional[str] = None
    items: Optional["ToolParameter"] = None

    def to_schema(self) -> Dict[str, Any]:
        """JSON Schema fragment for this parameter."""
        schema: Dict[str, Any] = {"type": self.type.value, "description": self.description}
        if self.enum:
            schema["enum"] = self.enum
        if self.minimum is not None:
            schema["minimum"] = self.minimum
        if self.maximum is not None:
            schema["maximum"] = self.maximum
        if self.pattern:
            schema["pattern"] = self.pattern
        if self.default is not None:
            schema["default"] = self.default
        if self.type == ToolParameterType.ARRAY and self.items:
            schema["items"] = self.items.to_schema()
        return schema


class Tool(BaseModel):
    """Standard MCP tool definition."""

    name: str
    description: str
    parameters: List[ToolParameter] = Field(default_factory=list)

    def to_mcp(self) -> Dict[str, Any]:
        """Wire form used in tools/list."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": {
                "type": "object",
                "properties": {p.name: p.to_schema() for p in self.parameters},
                "required": [p.name for p in self.parameters if p.required],
            },
        }


@dataclass
class ToolExecution:
    """Result of tool execution."""

    success: bool
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    execution_time_ms: Optional[float] = None


class ToolHandler(ABC):
    """Abstract base class for tool handlers."""

    @abstractmethod
    async def execute(self, arguments: Dict[str, Any]) -> Any:
        """
        Execute the tool with given arguments.

        Return a dict with optional "message" and "data" keys. Any other
        value is reported as "data".
        """
        pass

    @abstractmethod
    def get_tool_definition(self) -> Tool:
        """Get the tool definition for this handler."""
        pass


ChangeListener = Callable[[], Awaitable[Any]]


class ToolRegistry:
    """
    Registry for managing MCP tools with runtime discovery.

    Bind it to a ``HandlerRegistry`` to serve tools/list and tools/call.
    """

    def __init__(self, page_size: int = DEFAULT_PAGE_SIZE):
        self.tools: Dict[str, Tool] = {}
        self.handlers: Dict[str, ToolHandler] = {}
        self.page_size = page_size
        self._listeners: List[ChangeListener] = []

    def bind(self, handlers: HandlerRegistry) -> None:
        """Register this registry as the tools/list and tools/call handler."""
        handlers.register(MCPMethods.TOOLS_LIST, self.handle_list)
        handlers.register(MCPMethods.TOOLS_CALL, self.handle_call)

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    async def _notify_changed(self) -> None:
        for listener in self._listeners:
            await listener()

    async def register_tool_handler(self, handler: ToolHandler) -> None:
        """Register a tool with its handler."""
        tool = handler.get_tool_definition()
        self.tools[tool.name] = tool
        self.handlers[tool.name] = handler

        logger.info(
            event="tool_registered",
            tool_name=tool.name,
            parameters_count=len(tool.parameters),
            handler_type=type(handler).__name__,
        )
        await self._notify_changed()

    async def unregister_tool(self, tool_name: str) -> bool:
        """Unregister a tool."""
        if tool_name not in self.tools:
            return False

        del self.tools[tool_name]
        self.handlers.pop(tool_name, None)
        logger.info(event="tool_unregistered", tool_name=tool_name)
        await self._notify_changed()
        return True

    async def list_tools(self) -> List[Tool]:
        """List all registered tools."""
        return list(self.tools.values())

    async def handle_list(self, params: Dict[str, Any], session: Any) -> MCPToolsListResult:
        """tools/list with cursor-based pagination."""
        cursor = params.get("cursor")
        start_index = 0
        if cursor is not None:
            try:
                start_index = int(cursor)
            except (TypeError, ValueError):
                raise InvalidParamsError("Invalid cursor format")
            if start_index < 0:
                raise InvalidParamsError("Invalid cursor format")

        all_tools = [tool.to_mcp() for tool in await self.list_tools()]
        end_index = start_index + self.page_size
        next_cursor = str(end_index) if end_index < len(all_tools) else None

        return MCPToolsListResult(tools=all_tools[start_index:end_index], nextCursor=next_cursor)

    async def handle_call(self, params: Dict[str, Any], session: Any) -> MCPToolsCallResult:
        """tools/call. Unknown tools raise; execution failures become isError results."""
        try:
            call = MCPToolsCallParams.model_validate(params)
        except ValueError:
            raise InvalidParamsError("Tool call requires a 'name'")

        if call.name not in self.tools:
            raise ToolNotFoundError(call.name)

        execution = await self.execute_tool(call.name, call.arguments or {})
        if not execution.success:
            logger.warning(
                event="tool_execution_failed", tool_name=call.name, error=execution.error
            )
            return MCPToolsCallResult(
                content=[
                    MCPTextContent(text=execution.error or "Tool execution failed").model_dump()
                ],
                isError=True,
            )

        content: List[Dict[str, Any]] = []
        structured_content = None
        if "message" in execution.result:
            content.append(MCPTextContent(text=str(execution.result["message"])).model_dump())
        if "data" in execution.result:
            data = execution.result["data"]
            if isinstance(data, dict):
                structured_content = data
            text = data if isinstance(data, str) else str(data)
            content.append(MCPTextContent(text=text).model_dump())

        return MCPToolsCallResult(content=content, structuredContent=structured_content)

    async def execute_tool(self, tool_name: str, arguments: Dict[str, Any]) -> ToolExecution:
        """
        Execute a tool with given arguments.

        Args:
            tool_name: Name of the tool to execute
            arguments: Arguments to pass to the tool

        Returns:
            ToolExecution result with success status and results
        """
        start_time = time.perf_counter()

        handler = self.handlers.get(tool_name)
        if handler is None:
            return ToolExecution(success=False, error=f"No handler found for tool '{tool_name}'")

        validation_error = self._validate_arguments(self.tools[tool_name], arguments)
        if validation_error:
            return ToolExecution(
                success=False, error=f"Argument validation failed: {validation_error}"
            )

        try:
            result = await handler.execute(arguments)
        except Exception as e:
            execution_time = (time.perf_counter() - start_time) * 1000
            logger.error(
                event="tool_execution_error",
                tool_name=tool_name,
                error=str(e),
                execution_time_ms=execution_time,
            )
            return ToolExecution(success=False, error=str(e), execution_time_ms=execution_time)

        execution_time = (time.perf_counter() - start_time) * 1000
        if result is None:
            result = {}
        elif not isinstance(result, dict):
            # Bare values are reported as the tool's data
            result = {"data": result}
        logger.info(event="tool_executed", tool_name=tool_name, execution_time_ms=execution_time)
        return ToolExecution(success=True, result=result, execution_time_ms=execution_time)

    def _validate_arguments(self, tool: Tool, arguments: Dict[str, Any]) -> Optional[str]:
        """
        Validate tool arguments against parameter schema.

        Returns:
            None if valid, error message if invalid
        """
        params_by_name = {param.name: param for param in tool.parameters}

        for param in tool.parameters:
            if param.required and param.name not in arguments:
                return f"Required parameter '{param.name}' is missing"

        for param_name, value in arguments.items():
            param_def = params_by_name.get(param_name)
            if param_def is None:
                return f"Unknown parameter '{param_name}'"

            type_error = self._validate_parameter_type(param_def, value)
            if type_error:
                return f"Parameter '{param_name}': {type_error}"

        return None

    def _validate_parameter_type(self, param: ToolParameter, value: Any) -> Optional[str]:
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
                    item_error = self._validate_parameter_type(param.items, item)
                    if item_error:
                        return f"item {i}: {item_error}"

        elif param.type == ToolParameterType.OBJECT:
            if not isinstance(value, dict):
                return f"expected object, got {type(value).__name__}"

        if param.enum and value not in param.enum:
            return f"must be one of {param.enum}, got {value}"

        return None
