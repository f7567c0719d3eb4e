"""
Session state machine.

    Unconnected --connect--> Negotiating --initialize ok--> Ready --close--> Closed
                             Negotiating --initialize error--> Failed
                             Ready --protocol violation--> Failed

Closed and Failed are absorbing. Capability sets are written exactly once,
on the Negotiating -> Ready transition, and only read afterwards.
"""

import asyncio
import uuid
from enum import Enum
from typing import Optional

from common.logging import get_logger
from .capabilities import CapabilityRegistry, CapabilitySet
from .errors import MCPSessionError, SessionClosedError, SessionNotReadyError
from .jsonrpc import LoggingLevel, MCPImplementation
from .notifications import SubscriptionTable
from .requirements import CapabilitySide

logger = get_logger(__name__)


class SessionState(str, Enum):
    """Lifecycle states of a session."""

    UNCONNECTED = "unconnected"
    NEGOTIATING = "negotiating"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


class SessionRole(str, Enum):
    """Which end of the connection this session represents."""

    SERVER = "server"
    CLIENT = "client"


TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.FAILED})


class Session:
    """
    Aggregate root for one client <-> server connection.

    Holds the local registry (until locked), the locked local and remote
    capability sets, the lifecycle state, and the subscription table.
    """

    def __init__(
        self,
        registry: Optional[CapabilityRegistry] = None,
        role: SessionRole = SessionRole.SERVER,
        session_id: Optional[str] = None,
        subscriptions: Optional[SubscriptionTable] = None,
        log_level: LoggingLevel = LoggingLevel.INFO,
    ):
        self.id = session_id or uuid.uuid4().hex
        self.role = role
        self.registry = registry or CapabilityRegistry()
        self.state = SessionState.UNCONNECTED
        self.local_capabilities: Optional[CapabilitySet] = None
        self.remote_capabilities: Optional[CapabilitySet] = None
        self.peer_info: Optional[MCPImplementation] = None
        self.protocol_version: Optional[str] = None
        self.log_level = log_level
        self.subscriptions = subscriptions or SubscriptionTable()
        self.negotiation_lock = asyncio.Lock()
        self.failure_reason: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def server_capabilities(self) -> Optional[CapabilitySet]:
        return self.capabilities_for(CapabilitySide.SERVER)

    @property
    def client_capabilities(self) -> Optional[CapabilitySet]:
        return self.capabilities_for(CapabilitySide.CLIENT)

    def capabilities_for(self, side: CapabilitySide) -> Optional[CapabilitySet]:
        """Locked capability set of ``side``; None until the session is Ready."""
        local_side = (
            CapabilitySide.SERVER if self.role == SessionRole.SERVER else CapabilitySide.CLIENT
        )
        if side == local_side:
            return self.local_capabilities
        return self.remote_capabilities

    def ensure_open(self) -> None:
        """Raise ``SessionClosedError`` if the session is Closed or Failed."""
        if self.is_terminal:
            raise SessionClosedError(f"Session is {self.state.value}")

    def require_ready(self) -> None:
        """
        Raises:
            SessionClosedError: Session is Closed or Failed.
            SessionNotReadyError: initialize has not completed yet.
        """
        self.ensure_open()
        if self.state != SessionState.READY:
            raise SessionNotReadyError(f"Session is {self.state.value}; initialize first")

    def connect(self) -> None:
        """Unconnected -> Negotiating, on transport attach."""
        self.ensure_open()
        if self.state != SessionState.UNCONNECTED:
            raise MCPSessionError(f"Session already connected (state={self.state.value})")
        self.state = SessionState.NEGOTIATING
        logger.info(event="session_connected", session_id=self.id, role=self.role.value)

    def mark_ready(
        self,
        local_capabilities: CapabilitySet,
        remote_capabilities: CapabilitySet,
        peer_info: Optional[MCPImplementation],
        protocol_version: str,
    ) -> None:
        """Negotiating -> Ready. Stores both locked capability sets."""
        self.ensure_open()
        if self.state != SessionState.NEGOTIATING:
            raise SessionNotReadyError(f"Cannot become ready from {self.state.value}")

        self.registry.lock()
        self.local_capabilities = local_capabilities
        self.remote_capabilities = remote_capabilities
        self.peer_info = peer_info
        self.protocol_version = protocol_version
        self.state = SessionState.READY

        logger.info(
            event="session_ready",
            session_id=self.id,
            protocol_version=protocol_version,
            peer=peer_info.model_dump() if peer_info else None,
        )

    def fail(self, reason: str) -> None:
        """Move to Failed and release everything. No-op once terminal."""
        if self.is_terminal:
            return
        previous = self.state
        self.state = SessionState.FAILED
        self.failure_reason = reason
        self._release()
        logger.warning(
            event="session_failed", session_id=self.id, previous_state=previous.value, reason=reason
        )

    def close(self) -> None:
        """
        Graceful close. Idempotent.

        A close while negotiation is still in flight fails the session
        instead, so a pending handshake can never complete afterwards.
        """
        if self.is_terminal:
            return
        if self.state == SessionState.NEGOTIATING:
            self.fail("closed during negotiation")
            return
        self.state = SessionState.CLOSED
        self._release()
        logger.info(event="session_closed", session_id=self.id)

    def _release(self) -> None:
        self.registry.lock()
        dropped = self.subscriptions.clear()
        if dropped:
            logger.debug(event="subscriptions_released", session_id=self.id, uris=dropped)
