"""
Transport contract.

The session core never touches sockets or streams. A transport delivers
inbound frames to ``Connection.on_frame`` and accepts outbound frames through
``send_frame``. Framing (newlines, HTTP bodies, SSE events) is the
transport's business.
"""

from abc import ABC, abstractmethod


class Transport(ABC):
    """Abstract base class for frame transports."""

    @abstractmethod
    async def send_frame(self, frame: bytes) -> None:
        """Send one encoded JSON-RPC frame to the peer."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the underlying channel. Must be idempotent."""
        pass
