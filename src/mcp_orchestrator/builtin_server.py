#!/usr/bin/env python3
"""
Built-in reference tool server.

A small stdio MCP server used as the development stand-in for the bundled
system server and as the end-to-end fixture of the test suite.

Usage:
  python -m mcp_orchestrator.builtin_server
"""

import logging
import os
import platform
import sys
from datetime import datetime

from mcp.server.fastmcp import FastMCP

# stdout carries the protocol; logs go to stderr
logging.basicConfig(
    level=logging.WARNING,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr
)

mcp = FastMCP("mcp-orchestrator-builtin")


@mcp.tool()
def echo(text: str) -> str:
    """Return the given text unchanged."""
    return text


@mcp.tool()
def add(a: float, b: float) -> float:
    """Add two numbers."""
    return a + b


@mcp.tool()
def system_info() -> dict:
    """Describe the machine the server runs on."""
    return {
        "platform": platform.system(),
        "machine": platform.machine(),
        "python": platform.python_version(),
        "pid": os.getpid(),
        "time": datetime.now().isoformat(),
    }


def main():
    mcp.run()


if __name__ == "__main__":
    main()
