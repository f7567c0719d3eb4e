"""
Capability-gated Model Context Protocol session core.

Negotiates protocol version and capabilities once per connection, authorizes
every inbound method against the negotiated capabilities, and gates outbound
notifications on the same table.
"""

from .capabilities import CapabilityRegistry, CapabilitySet
from .connection import Connection
from .errors import (
    AlreadyNegotiatedError,
    CapabilityLockedError,
    CapabilityNotSupportedError,
    HandlerError,
    MCPSessionError,
    RegistrationAfterLockError,
    SessionClosedError,
    SessionNotReadyError,
    ToolNotFoundError,
    UnsupportedProtocolVersionError,
)
from .guard import MethodAuthorizationGuard
from .negotiation import NegotiationEngine
from .notifications import NotificationGate, NotificationKind
from .server import MCPServer
from .session import Session, SessionState

__all__ = [
    "AlreadyNegotiatedError",
    "CapabilityLockedError",
    "CapabilityNotSupportedError",
    "CapabilityRegistry",
    "CapabilitySet",
    "Connection",
    "HandlerError",
    "MCPServer",
    "MCPSessionError",
    "MethodAuthorizationGuard",
    "NegotiationEngine",
    "NotificationGate",
    "NotificationKind",
    "RegistrationAfterLockError",
    "Session",
    "SessionClosedError",
    "SessionNotReadyError",
    "SessionState",
    "ToolNotFoundError",
    "UnsupportedProtocolVersionError",
]
