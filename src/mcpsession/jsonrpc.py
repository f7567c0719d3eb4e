"""
JSON-RPC 2.0 Protocol Implementation for MCP

This module implements the JSON-RPC 2.0 envelope used by the Model Context
Protocol, the MCP method catalogue, and the params/result models of the
methods the session core interprets itself.

Reference: https://www.jsonrpc.org/specification
MCP Spec: https://spec.modelcontextprotocol.io/specification/2025-06-18/basic/
"""

import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

# JSON-RPC version constant
JSONRPC_VERSION = "2.0"

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# MCP-specific error codes
MCP_SERVER_ERROR = -32000
MCP_TOOL_NOT_FOUND = -32001
MCP_TOOL_EXECUTION_ERROR = -32002
MCP_CAPABILITY_NOT_SUPPORTED = -32003
MCP_SESSION_NOT_READY = -32004
MCP_SESSION_CLOSED = -32005


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 error object."""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 request message."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int]
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 response message (success)."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int]
    result: Any


class JSONRPCErrorResponse(BaseModel):
    """JSON-RPC 2.0 response message (error)."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int, None]
    error: JSONRPCError


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 notification message (no response expected)."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None


# Union type for all JSON-RPC messages
JSONRPCMessage = Union[JSONRPCRequest, JSONRPCResponse, JSONRPCErrorResponse, JSONRPCNotification]


class MCPMethods:
    """Standard MCP method names."""

    # Core protocol
    INITIALIZE = "initialize"
    INITIALIZED = "notifications/initialized"
    PING = "ping"

    # Tools
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"
    TOOLS_LIST_CHANGED = "notifications/tools/list_changed"

    # Resources
    RESOURCES_LIST = "resources/list"
    RESOURCES_TEMPLATES_LIST = "resources/templates/list"
    RESOURCES_READ = "resources/read"
    RESOURCES_SUBSCRIBE = "resources/subscribe"
    RESOURCES_UNSUBSCRIBE = "resources/unsubscribe"
    RESOURCES_LIST_CHANGED = "notifications/resources/list_changed"
    RESOURCES_UPDATED = "notifications/resources/updated"

    # Prompts
    PROMPTS_LIST = "prompts/list"
    PROMPTS_GET = "prompts/get"
    PROMPTS_LIST_CHANGED = "notifications/prompts/list_changed"

    # Logging
    LOGGING_SET_LEVEL = "logging/setLevel"
    LOGGING_MESSAGE = "notifications/message"

    # Completion
    COMPLETION_COMPLETE = "completion/complete"

    # Experimental features are addressed as "experimental/{feature}"
    EXPERIMENTAL_PREFIX = "experimental/"

    # Cancellation
    CANCEL = "notifications/cancelled"

    # Client features
    SAMPLING_CREATE_MESSAGE = "sampling/createMessage"
    ROOTS_LIST = "roots/list"
    ROOTS_LIST_CHANGED = "notifications/roots/list_changed"
    ELICITATION_CREATE = "elicitation/create"


class LoggingLevel(str, Enum):
    """RFC 5424 severities used by logging/setLevel and notifications/message."""

    DEBUG = "debug"
    INFO = "info"
    NOTICE = "notice"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    ALERT = "alert"
    EMERGENCY = "emergency"

    @property
    def severity(self) -> int:
        return _LEVEL_ORDER.index(self)


_LEVEL_ORDER = list(LoggingLevel)


class MCPImplementation(BaseModel):
    """MCP implementation info."""

    name: str
    version: str


class MCPInitializeParams(BaseModel):
    """Parameters for initialize request."""

    protocolVersion: str
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    clientInfo: MCPImplementation


class MCPInitializeResult(BaseModel):
    """Result for initialize response."""

    protocolVersion: str
    capabilities: Dict[str, Any]
    serverInfo: MCPImplementation
    instructions: Optional[str] = None


class MCPSubscribeParams(BaseModel):
    """Parameters for resources/subscribe and resources/unsubscribe."""

    uri: str


class MCPSetLevelParams(BaseModel):
    """Parameters for logging/setLevel."""

    level: LoggingLevel


class MCPLoggingMessageParams(BaseModel):
    """Parameters for notifications/message."""

    level: LoggingLevel
    data: Any
    logger: Optional[str] = None


class MCPCancelledParams(BaseModel):
    """Parameters for notifications/cancelled."""

    requestId: Union[str, int]
    reason: Optional[str] = None


class MCPToolsListResult(BaseModel):
    """Result for tools/list response."""

    tools: List[Dict[str, Any]]
    nextCursor: Optional[str] = None


class MCPToolsCallParams(BaseModel):
    """Parameters for tools/call request."""

    name: str
    arguments: Optional[Dict[str, Any]] = None


class MCPTextContent(BaseModel):
    """Text content for tool results."""

    type: str = "text"
    text: str


class MCPToolsCallResult(BaseModel):
    """Result for tools/call response."""

    content: List[Dict[str, Any]]
    isError: bool = False
    structuredContent: Optional[Dict[str, Any]] = None


class JSONRPCHandler:
    """Handler for JSON-RPC message processing."""

    @staticmethod
    def create_request(
        id: Union[str, int], method: str, params: Optional[Dict[str, Any]] = None
    ) -> JSONRPCRequest:
        """Create a JSON-RPC request."""
        return JSONRPCRequest(id=id, method=method, params=params)

    @staticmethod
    def create_response(id: Union[str, int], result: Any) -> JSONRPCResponse:
        """Create a JSON-RPC success response."""
        return JSONRPCResponse(id=id, result=result)

    @staticmethod
    def create_error_response(
        id: Union[str, int, None], code: int, message: str, data: Optional[Any] = None
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
    def parse_message(data: Dict[str, Any]) -> JSONRPCMessage:
        """Parse a raw JSON object into a JSON-RPC message."""
        if not isinstance(data, dict):
            raise ValueError(f"Invalid JSON-RPC message: {data!r}")

        if "id" in data:
            if "method" in data:
                return JSONRPCRequest.model_validate(data)
            elif "result" in data:
                return JSONRPCResponse.model_validate(data)
            elif "error" in data:
                return JSONRPCErrorResponse.model_validate(data)
        elif "method" in data:
            # Absence of id marks a notification
            return JSONRPCNotification.model_validate(data)

        raise ValueError(f"Invalid JSON-RPC message: {data!r}")

    @staticmethod
    def is_batch(data: Any) -> bool:
        """Check if the data represents a JSON-RPC batch."""
        return isinstance(data, list)

    @staticmethod
    def to_wire(message: JSONRPCMessage) -> Dict[str, Any]:
        """Dump a message to its wire dict, omitting absent optional members."""
        payload = message.model_dump(exclude_none=True, mode="json")
        if isinstance(message, JSONRPCResponse):
            payload["result"] = message.model_dump(mode="json")["result"]
        elif isinstance(message, JSONRPCErrorResponse):
            payload["id"] = message.id
        return payload

    @staticmethod
    def decode_frame(frame: Union[bytes, str]) -> Any:
        """Decode a transport frame into raw JSON. Raises ValueError on bad JSON."""
        if isinstance(frame, (bytes, bytearray)):
            frame = frame.decode("utf-8")
        return json.loads(frame)

    @staticmethod
    def encode_frame(payload: Union[JSONRPCMessage, Dict[str, Any], List[Any]]) -> bytes:
        """Encode a message (or already-dumped payload) into a compact JSON frame."""
        if isinstance(payload, BaseModel):
            payload = JSONRPCHandler.to_wire(payload)
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")
