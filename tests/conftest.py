"""
Shared fixtures for session core tests.

RecordingTransport stands in for the transport collaborator: it keeps every
outbound frame (decoded) so tests can assert on the wire traffic.
"""

import json
from typing import Any, Dict, List, Optional

import pytest

from common.config import Config
from mcpsession.jsonrpc import MCPMethods
from mcpsession.server import MCPServer
from mcpsession.transports.base import Transport


class RecordingTransport(Transport):
    """In-memory transport that records outbound frames."""

    def __init__(self) -> None:
        self.frames: List[Any] = []
        self.closed = False

    async def send_frame(self, frame: bytes) -> None:
        self.frames.append(json.loads(frame))

    async def close(self) -> None:
        self.closed = True

    @property
    def last(self) -> Any:
        return self.frames[-1]


def initialize_params(
    version: str = "2025-06-18", capabilities: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    return {
        "protocolVersion": version,
        "capabilities": capabilities or {},
        "clientInfo": {"name": "TestClient", "version": "1.0.0"},
    }


def request_frame(id: Any, method: str, params: Optional[Dict[str, Any]] = None) -> bytes:
    message: Dict[str, Any] = {"jsonrpc": "2.0", "id": id, "method": method}
    if params is not None:
        message["params"] = params
    return json.dumps(message).encode("utf-8")


def notification_frame(method: str, params: Optional[Dict[str, Any]] = None) -> bytes:
    message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    return json.dumps(message).encode("utf-8")


async def call(connection, transport: RecordingTransport, id: Any, method: str, params=None):
    """Send one request frame and return the response frame."""
    await connection.on_frame(request_frame(id, method, params))
    return transport.last


async def initialize(connection, transport, client_capabilities=None, version="2025-06-18"):
    return await call(
        connection,
        transport,
        "init-1",
        MCPMethods.INITIALIZE,
        initialize_params(version, client_capabilities),
    )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_server():
    """Factory for servers declaring the given capabilities."""

    def _make(capabilities: Optional[Dict[str, Dict[str, Any]]] = None) -> MCPServer:
        return MCPServer(Config(capabilities=capabilities or {}))

    return _make
