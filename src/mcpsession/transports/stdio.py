"""
Standard I/O Transport for MCP

Newline-delimited JSON-RPC over stdin/stdout, so that MCP clients can spawn
the server as a subprocess. Only framing lives here: every frame is handed to
the session core unchanged.

Reference: https://modelcontextprotocol.io/specification/2025-06-18/basic/transports
"""

import asyncio
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import IO, Optional

from common.config import Config
from common.logging import get_logger
from ..connection import Connection
from ..server import MCPServer
from .base import Transport

logger = get_logger(__name__)


class StdioTransport(Transport):
    """
    Standard I/O transport for MCP communication.

    Reads one JSON-RPC frame per line from stdin and writes one per line to
    stdout. Blocking reads and writes run on separate worker threads, so a
    write never queues behind a read that is waiting for the peer.
    """

    def __init__(self, stdin: Optional[IO[str]] = None, stdout: Optional[IO[str]] = None):
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.read_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stdio-read")
        self.write_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stdio-write")
        self.running = False
        self.connection: Optional[Connection] = None

    async def send_frame(self, frame: bytes) -> None:
        """Write one frame followed by a newline."""
        line = frame.decode("utf-8") + "\n"
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self.write_executor, self._write, line)

    def _write(self, line: str) -> None:
        self.stdout.write(line)
        self.stdout.flush()

    async def close(self) -> None:
        if not self.running:
            return
        self.running = False
        logger.info(event="stdio_transport_stopped")

    async def serve(self, connection: Connection) -> None:
        """
        Pump stdin lines into ``connection`` until EOF or close.

        Frames are handed over without waiting for their handlers, so replies
        to server-initiated requests are read while those handlers wait. On
        EOF the handlers still running are allowed to finish.
        """
        self.connection = connection
        self.running = True
        loop = asyncio.get_running_loop()
        logger.info(event="stdio_transport_started", session_id=connection.session.id)

        try:
            while self.running:
                line = await loop.run_in_executor(self.read_executor, self.stdin.readline)
                if not line:
                    logger.info(event="stdin_eof")
                    break

                line = line.strip()
                if not line:
                    continue

                connection.receive(line.encode("utf-8"))

            await connection.drain()
        finally:
            await connection.close()
            self.read_executor.shutdown(wait=False)
            self.write_executor.shutdown(wait=False)


class StdioServer:
    """
    Standalone stdio MCP server.

    Can be run as a standalone executable for stdio transport.
    """

    def __init__(self, config: Optional[Config] = None):
        self.mcp_server = MCPServer(config)
        self.transport = StdioTransport()

    async def run(self) -> None:
        """Run until stdin reaches EOF or the session ends."""
        connection = self.mcp_server.attach(self.transport)
        await self.transport.serve(connection)
