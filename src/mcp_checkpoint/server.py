"""
Checkpoint MCP Server - FastMCP adapter.

Exposes the checkpoint operations as MCP tools. All behavior lives in
CheckpointManager; this module only handles process lifecycle.
"""

import os
import sys
from pathlib import Path
from typing import Dict, Any, Optional, List
from contextlib import asynccontextmanager

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from . import __version__
from .checkpoint.manager import CheckpointManager
from .utils.config import load_config, CheckpointServerConfig
from .utils.logging import setup_logging, get_logger
from .utils.errors import CheckpointMCPError

logger = get_logger("mcp-checkpoint.server")


class ServerState:
    """Configuration and manager shared by the tools."""

    def __init__(self):
        self.config: Optional[CheckpointServerConfig] = None
        self.manager: Optional[CheckpointManager] = None
        self.debug_log: Optional[Path] = None
        self.initialized = False

    async def initialize(self) -> None:
        if self.initialized:
            return

        self.config = await load_config()
        if self.config.debug:
            self.config.logging.level = "DEBUG"

        logging_setup = setup_logging(
            self.config.app_name,
            log_level=self.config.logging.level,
            log_dir=self.config.log_directory,
            enable_json=self.config.logging.format == "json",
            max_bytes=self.config.logging.max_size,
            backup_count=self.config.logging.backup_count,
        )
        self.debug_log = logging_setup["debug_log"]

        self.manager = CheckpointManager(self.config.checkpoint, debug_log_path=self.debug_log)
        self.initialized = True

        logger.info(
            "server_initialized",
            version=__version__,
            workspace=str(self.config.checkpoint.workspace_path),
            storage=str(self.config.checkpoint.storage_path),
            debug_log=str(self.debug_log)
        )

    def require_manager(self) -> CheckpointManager:
        if not self.initialized or self.manager is None:
            raise CheckpointMCPError("Server not initialized")
        return self.manager


state = ServerState()


@asynccontextmanager
async def lifespan(app):
    try:
        await state.initialize()
    except Exception as e:
        logger.error("server_initialization_failed", error=str(e), exc_info=True)
        raise

    try:
        yield
    finally:
        state.initialized = False


mcp_server = FastMCP(
    name="MCP Checkpoint Server",
    instructions="""Git-like checkpoints for the current workspace.

Create a checkpoint before risky edits, browse the timeline, inspect what
changed since any checkpoint, and roll the workspace back to it.
Rollback is a hard reset of tracked files; later checkpoints stay listed.""",
    lifespan=lifespan
)


# ===== TOOLS =====

async def _call(operation: str, *args) -> Any:
    """Run a manager operation; engine errors become MCP tool errors"""
    try:
        manager = state.require_manager()
        return await getattr(manager, operation)(*args)
    except CheckpointMCPError as e:
        logger.error("tool_failed", operation=operation, **e.to_dict()["error"])
        raise ToolError(e.message) from e


@mcp_server.tool()
async def create_checkpoint(message: Optional[str] = None) -> Dict[str, Any]:
    """
    Create a checkpoint of the current workspace state.

    Args:
        message: Optional description of the checkpoint

    Returns:
        Checkpoint id, timestamp, number of files changed and snapshot ref
    """
    return await _call("create_checkpoint", message)


@mcp_server.tool()
async def show_timeline(limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Show the checkpoint timeline, newest first.

    Args:
        limit: Maximum number of checkpoints to show (default: 20)
    """
    return await _call("list_checkpoints", limit)


@mcp_server.tool()
async def rollback_checkpoint(checkpoint_id: str) -> Dict[str, Any]:
    """
    Roll the workspace back to a checkpoint.

    Args:
        checkpoint_id: The ID of the checkpoint to rollback to
    """
    return await _call("rollback", checkpoint_id)


@mcp_server.tool()
async def show_diff(
    from_checkpoint: str,
    to_checkpoint: Optional[str] = None
) -> Dict[str, Any]:
    """
    Show changes between two checkpoints, or from a checkpoint to now.

    Args:
        from_checkpoint: The ID of the checkpoint to compare from
        to_checkpoint: The ID of the checkpoint to compare to (defaults to current state)
    """
    return await _call("diff", from_checkpoint, to_checkpoint)


@mcp_server.tool()
async def checkpoint_status() -> Dict[str, Any]:
    """Current checkpoint, checkpoint count and workspace details."""
    return await _call("status")


@mcp_server.tool()
async def cleanup_checkpoints(max_age_days: Optional[int] = None) -> Dict[str, Any]:
    """
    Remove checkpoint records older than max_age_days (default from config).

    Snapshot history is kept; only the timeline entries are removed.
    """
    return await _call("cleanup", max_age_days)


@mcp_server.tool()
async def view_debug_log(lines: int = 50) -> Dict[str, Any]:
    """
    Show the last lines of the debug log.

    Args:
        lines: Number of lines to show from the end of the log
    """
    return await _call("view_debug_log", lines)


@mcp_server.tool()
async def clear_debug_log() -> Dict[str, Any]:
    """Clear the debug log."""
    return await _call("clear_debug_log")


def main():
    """Run the checkpoint MCP server."""
    import argparse

    parser = argparse.ArgumentParser(description="MCP Checkpoint Server")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--config", type=str, help="Config file path")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument("--port", type=int, help="Port for HTTP transport")
    parser.add_argument("--transport", choices=["stdio", "sse"],
                        default="stdio", help="Transport type")

    args = parser.parse_args()

    if args.version:
        print(f"MCP Checkpoint Server v{__version__}")
        return

    if args.config:
        os.environ['CHECKPOINT_CONFIG'] = args.config

    if args.debug:
        os.environ['CHECKPOINT_DEBUG'] = 'true'

    # Console logging would corrupt the stdio JSON-RPC stream
    if args.transport == "stdio":
        os.environ['CHECKPOINT_MCP_MODE'] = 'stdio'

    try:
        logger.info(
            "server_starting",
            version=__version__,
            transport=args.transport,
            debug=args.debug
        )

        if args.transport == "stdio":
            mcp_server.run(show_banner=False)
        elif args.transport == "sse":
            mcp_server.run(transport="sse", port=args.port or 8000)

    except KeyboardInterrupt:
        logger.info("server_stopped_by_user")
    except Exception as e:
        logger.error("server_error", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
