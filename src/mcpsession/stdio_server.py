#!/usr/bin/env python3
"""
MCP Stdio Server

Entry point that serves the capability-gated session core over stdio.

Usage:
    mcpsession-stdio --config config.yaml

The server reads JSON-RPC messages from stdin and writes responses to stdout.
Logs go to stderr.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from common.config import load_config
from common.logging import get_logger, setup_logging
from mcpsession.transports.stdio import StdioServer

logger = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Capability-gated MCP server over stdio")
    parser.add_argument(
        "--config", type=Path, default=Path("config.yaml"), help="Path to config.yaml"
    )
    return parser.parse_args(argv)


async def run(config_path: Path) -> None:
    config = load_config(config_path)
    setup_logging(config)
    await StdioServer(config).run()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for stdio server."""
    args = parse_args(argv)
    try:
        asyncio.run(run(args.config))
    except KeyboardInterrupt:
        logger.info(event="stdio_server_interrupted")
    except Exception as e:
        logger.error(event="stdio_server_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
