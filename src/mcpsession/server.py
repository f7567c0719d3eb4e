"""
MCP Server facade.

Owns everything that outlives a single connection: server identity, the
server-wide capability declarations, the handler collaborators, and the set
of live connections. Each attached transport gets its own Session, whose
registry starts as a copy of the server-wide declarations.
"""

from typing import Any, Dict, List, Optional, Set

from common.config import Config
from common.logging import get_logger, log_startup_message
from .capabilities import CapabilityRegistry
from .connection import Connection
from .guard import MethodAuthorizationGuard, default_guard
from .handlers import HandlerRegistry
from .jsonrpc import LoggingLevel, MCPImplementation
from .negotiation import NegotiationEngine
from .notifications import NotificationGate, NotificationKind, SubscriptionTable
from .session import Session
from .tool_registry import ToolRegistry
from .transports.base import Transport

logger = get_logger(__name__)


class MCPServer:
    """
    Capability-gated MCP server.

    Declare capabilities and register handlers before connections are
    attached; every connection locks its own copy of the declarations during
    its initialize handshake.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()

        self.capabilities = CapabilityRegistry(self.config.capabilities)
        self.handlers = HandlerRegistry()
        self.guard: MethodAuthorizationGuard = default_guard
        self.gate = NotificationGate()
        self.server_info = MCPImplementation(
            name=self.config.server.name, version=self.config.server.version
        )
        self.negotiation = NegotiationEngine(
            server_info=self.server_info,
            supported_versions=self.config.session.supported_protocol_versions,
            instructions=self.config.server.instructions,
        )
        self.tool_registry = ToolRegistry()
        self.tool_registry.bind(self.handlers)
        self.tool_registry.add_change_listener(self.notify_tools_changed)

        self.connections: Set[Connection] = set()

        log_startup_message(
            "mcp_server_initialized",
            server=self.server_info.model_dump(),
            protocol_versions=list(self.negotiation.supported_versions),
            capabilities=self.capabilities.pending(),
        )

    def declare(self, capability: str, options: Optional[Dict[str, Any]] = None) -> None:
        """Declare a capability for every connection attached from now on."""
        self.capabilities.declare(capability, options)

    def attach(self, transport: Transport, session_id: Optional[str] = None) -> Connection:
        """Bind a transport to a fresh session and move it to Negotiating."""
        session_config = self.config.session
        session = Session(
            registry=self.capabilities.copy(),
            session_id=session_id,
            subscriptions=SubscriptionTable(session_config.subscription_lock_shards),
            log_level=LoggingLevel(session_config.default_log_level),
        )
        connection = Connection(
            session=session,
            transport=transport,
            handlers=self.handlers,
            negotiation=self.negotiation,
            guard=self.guard,
            gate=self.gate,
            request_timeout=session_config.request_timeout,
            on_close=self.connections.discard,
        )
        connection.open()
        self.connections.add(connection)

        logger.info(
            event="transport_attached",
            session_id=session.id,
            transport=type(transport).__name__,
            connections=len(self.connections),
        )
        return connection

    async def _broadcast(self, kind: NotificationKind, **kwargs: Any) -> int:
        sent = 0
        for connection in list(self.connections):
            if await connection.notify(kind, **kwargs):
                sent += 1
        return sent

    async def notify_tools_changed(self) -> int:
        """Send notifications/tools/list_changed to every connection whose gate allows it."""
        sent = await self._broadcast(NotificationKind.TOOL_LIST_CHANGED)
        logger.info(event="tools_change_notification_sent", connections_notified=sent)
        return sent

    async def notify_prompts_changed(self) -> int:
        return await self._broadcast(NotificationKind.PROMPT_LIST_CHANGED)

    async def notify_resource_list_changed(self) -> int:
        return await self._broadcast(NotificationKind.RESOURCE_LIST_CHANGED)

    async def notify_resource_updated(self, uri: str) -> int:
        """Send notifications/resources/updated to the connections subscribed to ``uri``."""
        return await self._broadcast(
            NotificationKind.RESOURCE_UPDATED, params={"uri": uri}, uri=uri
        )

    async def send_logging_message(
        self, level: LoggingLevel | str, data: Any, logger_name: Optional[str] = None
    ) -> int:
        sent = 0
        for connection in list(self.connections):
            if await connection.send_logging_message(level, data, logger_name):
                sent += 1
        return sent

    async def close(self) -> None:
        """Close every live connection."""
        for connection in list(self.connections):
            await connection.close()

    def health_check(self) -> Dict[str, Any]:
        """Snapshot of server state."""
        sessions: List[Dict[str, Any]] = [
            {
                "session_id": c.session.id,
                "state": c.session.state.value,
                "protocol_version": c.session.protocol_version,
                "subscriptions": len(c.session.subscriptions),
            }
            for c in self.connections
        ]
        return {
            "status": "healthy",
            "server": self.server_info.model_dump(),
            "protocol_versions": list(self.negotiation.supported_versions),
            "capabilities": self.capabilities.pending(),
            "handlers": self.handlers.methods(),
            "notifications_suppressed": dict(self.gate.suppressed),
            "notifications_dropped": dict(self.gate.dropped),
            "sessions": sessions,
        }
