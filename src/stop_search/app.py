"""MCP application instance.

This module exists to avoid circular import issues when running with `python -m`.
All tool modules should import `mcp` from here, not from server.py.
"""

from mcp.server.fastmcp import FastMCP

# Initialize the MCP server
mcp = FastMCP(
    "Stop Search",
    instructions=(
        "Public-transit stop name search - ranked, typo-tolerant lookup of stations "
        "and platforms, with 'City, Stop' qualification and alias support"
    ),
)
