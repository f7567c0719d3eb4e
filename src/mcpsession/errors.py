"""
Error taxonomy for the MCP session core.

Every error carries a stable JSON-RPC code so that it can be surfaced to the
peer as a wire-level error object. ``session_fatal`` marks errors after which
the session is moved to Failed and the transport is told to close.
"""

from typing import Any, Dict, List, Optional

from .jsonrpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    JSONRPCError,
    MCP_CAPABILITY_NOT_SUPPORTED,
    MCP_SERVER_ERROR,
    MCP_SESSION_CLOSED,
    MCP_SESSION_NOT_READY,
    MCP_TOOL_NOT_FOUND,
    METHOD_NOT_FOUND,
)


class MCPSessionError(Exception):
    """Base class for all errors raised by the session core."""

    code: int = MCP_SERVER_ERROR
    session_fatal: bool = False

    def __init__(self, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.data = data

    def to_jsonrpc_error(self) -> JSONRPCError:
        """Convert to a JSON-RPC error object."""
        return JSONRPCError(code=self.code, message=self.message, data=self.data)


class UnsupportedProtocolVersionError(MCPSessionError):
    """Requested protocol version is not one this implementation speaks."""

    code = INVALID_PARAMS
    session_fatal = True

    def __init__(self, requested: str, closest: str, supported: List[str]):
        self.requested = requested
        self.closest = closest
        self.supported = list(supported)
        super().__init__(
            f"Unsupported protocol version '{requested}'; closest supported is '{closest}'",
            data={"requested": requested, "closest": closest, "supported": self.supported},
        )


class AlreadyNegotiatedError(MCPSessionError):
    """Second initialize on the same session."""

    code = INVALID_REQUEST
    session_fatal = True

    def __init__(self) -> None:
        super().__init__("Session has already been initialized")


class InvalidParamsError(MCPSessionError):
    """Request params failed validation."""

    code = INVALID_PARAMS


class MethodNotFoundError(MCPSessionError):
    """No handler is registered for an authorized method."""

    code = METHOD_NOT_FOUND

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Method '{method}' not found", data={"method": method})


class CapabilityLockedError(MCPSessionError):
    """A capability set was modified after it was locked."""


class RegistrationAfterLockError(CapabilityLockedError):
    """Capability registration attempted after the session left negotiation."""

    def __init__(self, capability: str):
        self.capability = capability
        super().__init__(
            f"Cannot declare capability '{capability}': capabilities are locked",
            data={"capability": capability},
        )


class UnknownCapabilityError(MCPSessionError):
    """A local declaration named a capability this implementation does not know."""

    def __init__(self, capability: str):
        self.capability = capability
        super().__init__(f"Unknown capability '{capability}'", data={"capability": capability})


class CapabilityNotSupportedError(MCPSessionError):
    """Method requires a capability the responsible side did not declare."""

    code = MCP_CAPABILITY_NOT_SUPPORTED

    def __init__(self, method: str):
        self.method = method
        super().__init__(
            f"Method '{method}' requires a capability that was not negotiated",
            data={"method": method},
        )


class SessionNotReadyError(MCPSessionError):
    """Request arrived before the initialize handshake completed."""

    code = MCP_SESSION_NOT_READY

    def __init__(self, message: str = "Session is not ready"):
        super().__init__(message)


class SessionClosedError(MCPSessionError):
    """Session is Closed or Failed."""

    code = MCP_SESSION_CLOSED

    def __init__(self, message: str = "Session is closed"):
        super().__init__(message)


class ProtocolViolationError(MCPSessionError):
    """Malformed frame or envelope from the peer."""

    code = INVALID_REQUEST
    session_fatal = True


class HandlerError(MCPSessionError):
    """
    Domain error raised by a handler collaborator.

    Handlers subclass this (or raise it with an explicit code) to report
    errors that are safe to show to the peer.
    """

    def __init__(self, message: str, code: Optional[int] = None, data: Optional[Any] = None):
        super().__init__(message, data=data)
        if code is not None:
            self.code = code


class ToolNotFoundError(HandlerError):
    """tools/call named a tool that is not registered."""

    code = MCP_TOOL_NOT_FOUND

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' not found", data={"tool": tool_name})


class RemoteError(MCPSessionError):
    """The peer answered a server-initiated request with an error object."""

    def __init__(self, error: JSONRPCError):
        super().__init__(error.message, data=error.data)
        self.code = error.code


def validation_details(error: Any) -> List[Dict[str, Any]]:
    """JSON-safe summary of a pydantic ValidationError (location and message only)."""
    return [
        {"loc": [str(part) for part in detail["loc"]], "msg": detail["msg"]}
        for detail in error.errors()
    ]


def internal_error() -> JSONRPCError:
    """Generic error object used when a cause must not leak to the peer."""
    return JSONRPCError(code=INTERNAL_ERROR, message="Internal error")
