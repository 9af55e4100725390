"""
MCP Checkpoint - Git-like checkpoints for a workspace, served over MCP.

This package provides:
- A shadow snapshot history kept apart from the user's own version control
- A per-workspace checkpoint timeline
- Diff and hard-reset rollback to any checkpoint
"""

__version__ = "0.1.0"

__all__ = [
    '__version__',
]
