"""
Initialize handshake.

Runs exactly once per session: checks the requested protocol version, stores
the peer's capabilities as declared (advertised, never intersected), locks the
local registry, and moves the session to Ready. Any failure while
negotiating moves the session to Failed.
"""

from datetime import date
from typing import Any, Dict, Optional, Sequence

from pydantic import ValidationError

from common.logging import TimedLogger, get_logger
from .capabilities import CapabilitySet
from .errors import (
    AlreadyNegotiatedError,
    InvalidParamsError,
    MCPSessionError,
    SessionNotReadyError,
    UnsupportedProtocolVersionError,
    validation_details,
)
from .jsonrpc import MCPImplementation, MCPInitializeParams, MCPInitializeResult
from .session import Session, SessionState

logger = get_logger(__name__)

SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[-1]


def _parse_version(version: str) -> Optional[date]:
    try:
        return date.fromisoformat(version)
    except (TypeError, ValueError):
        return None


def closest_supported_version(requested: str, supported: Sequence[str]) -> str:
    """
    Pick the supported version nearest in time to ``requested``.

    Ties go to the newer version. A version that is not a date falls back to
    the newest supported version.
    """
    ordered = sorted(supported, key=lambda v: (_parse_version(v) or date.min, v))
    requested_date = _parse_version(requested)
    if requested_date is None:
        return ordered[-1]

    def distance(version: str) -> tuple:
        candidate = _parse_version(version)
        if candidate is None:
            return (float("inf"), 0)
        return (abs((candidate - requested_date).days), -candidate.toordinal())

    return min(ordered, key=distance)


class NegotiationEngine:
    """Server-side initialize handler shared by every connection of a server."""

    def __init__(
        self,
        server_info: MCPImplementation,
        supported_versions: Sequence[str] = SUPPORTED_PROTOCOL_VERSIONS,
        instructions: Optional[str] = None,
    ):
        if not supported_versions:
            raise ValueError("At least one supported protocol version is required")
        self.server_info = server_info
        self.supported_versions = tuple(supported_versions)
        self.instructions = instructions

    async def negotiate(
        self, session: Session, params: Optional[Dict[str, Any]]
    ) -> MCPInitializeResult:
        """
        Execute the handshake for ``session``.

        Raises:
            AlreadyNegotiatedError: initialize already ran (session -> Failed).
            UnsupportedProtocolVersionError: version not supported (session -> Failed).
            InvalidParamsError: malformed params (session -> Failed).
            SessionNotReadyError: no transport attached yet.
            SessionClosedError: session is Closed or Failed.
        """
        if session.state == SessionState.READY or session.negotiation_lock.locked():
            session.fail("duplicate initialize")
            raise AlreadyNegotiatedError()
        session.ensure_open()
        if session.state == SessionState.UNCONNECTED:
            raise SessionNotReadyError("Session has no transport attached")

        async with session.negotiation_lock:
            with TimedLogger(logger, "session_negotiated", session_id=session.id):
                try:
                    return self._negotiate(session, params)
                except MCPSessionError as e:
                    session.fail(e.message)
                    raise

    def _negotiate(
        self, session: Session, params: Optional[Dict[str, Any]]
    ) -> MCPInitializeResult:
        if not params:
            raise InvalidParamsError("Initialize requires params")

        try:
            initialize = MCPInitializeParams.model_validate(params)
        except ValidationError as e:
            raise InvalidParamsError(
                "Invalid initialize params", data={"errors": validation_details(e)}
            ) from e

        version = initialize.protocolVersion
        if version not in self.supported_versions:
            closest = closest_supported_version(version, self.supported_versions)
            logger.warning(
                event="protocol_version_unsupported",
                session_id=session.id,
                requested=version,
                closest=closest,
            )
            raise UnsupportedProtocolVersionError(version, closest, list(self.supported_versions))

        try:
            remote = CapabilitySet.from_wire(initialize.capabilities, version)
        except ValidationError as e:
            raise InvalidParamsError(
                "Invalid peer capabilities", data={"errors": validation_details(e)}
            ) from e

        local = session.registry.freeze(version)
        session.mark_ready(local, remote, initialize.clientInfo, version)

        if remote.extensions:
            logger.info(
                event="peer_unknown_capabilities_retained",
                session_id=session.id,
                capabilities=list(remote.extensions),
            )

        return MCPInitializeResult(
            protocolVersion=version,
            capabilities=local.to_wire(),
            serverInfo=self.server_info,
            instructions=self.instructions,
        )
