#!/usr/bin/env python3
"""
MCP Reference Stdio Server

Entry point that runs the reference server over stdio. MCP clients spawn it
as a subprocess, write JSON-RPC messages to its stdin and read responses from
its stdout. Diagnostics go to stderr; lifecycle events go to
~/mcp-reference.log (truncated on every start).

Usage:
    mcp-reference-server [--config config.yaml] [--log-level DEBUG]

Or:
    python -m reference_server.stdio_server
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import ValidationError

from common.config import load_config
from common.logging import get_logger, setup_logging
from .supervisor import EXIT_FAULT, EXIT_OK, ServerSupervisor

logger = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="MCP reference server (stdio transport)")
    parser.add_argument("--config", type=str, help="Path to config.yaml (default: ./config.yaml)")
    parser.add_argument("--log-level", type=str, help="Override the diagnostic log level")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for stdio server."""
    args = parse_args(argv)

    try:
        config = load_config(Path(args.config) if args.config else None)
    except (ValidationError, yaml.YAMLError, OSError) as e:
        # Logging is not configured yet; stdout is reserved for the protocol
        print(f"[MCP] Invalid configuration: {e}", file=sys.stderr)
        sys.exit(EXIT_FAULT)

    if args.log_level:
        config.log_level = args.log_level

    setup_logging(config)

    try:
        exit_code = asyncio.run(ServerSupervisor(config).run())
    except KeyboardInterrupt:
        logger.info(event="server_interrupted")
        exit_code = EXIT_OK

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
