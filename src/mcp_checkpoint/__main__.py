#!/usr/bin/env python3
"""
MCP Checkpoint Server - Main entry point for python -m mcp_checkpoint
"""

import sys
import os

# Set stdio mode before any imports
os.environ.setdefault('CHECKPOINT_MCP_MODE', 'stdio')


def main():
    """Main entry point for python -m mcp_checkpoint"""
    try:
        from mcp_checkpoint.server import main as server_main
        server_main()
    except KeyboardInterrupt:
        print("\nMCP Checkpoint Server stopped by user", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    main()
