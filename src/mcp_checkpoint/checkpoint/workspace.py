"""Workspace resolution and identity"""

import os
from pathlib import Path
from typing import Optional, Union
from dataclasses import dataclass

from ..utils.logging import get_logger
from ..utils.errors import InvalidWorkspaceError, ProtectedDirectoryError

logger = get_logger(__name__)

IDENTITY_WIDTH = 13
PROTECTED_SUBFOLDERS = ("Desktop", "Documents", "Downloads")


def hash_working_dir(working_dir: Union[str, Path]) -> str:
    """Hash a canonical workspace path to a fixed-width numeric identity.

    32-bit rolling hash (h * 31 + unit) over the UTF-16 code units of the
    path, rendered in decimal and zero-padded to 13 characters.
    """
    path_str = str(working_dir)
    if not path_str:
        raise InvalidWorkspaceError("Working directory path cannot be empty")

    encoded = path_str.encode("utf-16-le", errors="surrogatepass")
    value = 0
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        value = (value * 31 + unit) & 0xFFFFFFFF

    return str(value)[:IDENTITY_WIDTH].zfill(IDENTITY_WIDTH)


@dataclass(frozen=True)
class WorkspaceIdentity:
    """Canonical tracked root and the identity that partitions its storage"""
    path: Path
    identity_hash: str

    def to_dict(self):
        return {"path": str(self.path), "identityHash": self.identity_hash}


class WorkspaceResolver:
    """Validates and canonicalizes the tracked root

    Refuses the user's home directory and its Desktop, Documents and
    Downloads folders. The comparison is exact on canonical paths, so
    project directories nested below them are fine.
    """

    def __init__(self, home: Optional[Path] = None):
        self._home = home

    @property
    def home(self) -> Path:
        return Path(self._home) if self._home is not None else Path.home()

    def protected_directories(self) -> dict:
        """Canonical protected path -> display name"""
        home = _canonical(self.home)
        protected = {home: "home"}
        for name in PROTECTED_SUBFOLDERS:
            protected[_canonical(home / name)] = name
        return protected

    def resolve(self, requested_path: Union[str, Path, None]) -> WorkspaceIdentity:
        if requested_path is None or str(requested_path) == "":
            raise InvalidWorkspaceError(
                "No workspace path provided. Please set CHECKPOINT_WORKSPACE_PATH."
            )

        canonical = _canonical(Path(requested_path).expanduser())

        if not canonical.exists():
            raise InvalidWorkspaceError(f"Workspace directory does not exist: {canonical}")
        if not canonical.is_dir():
            raise InvalidWorkspaceError(f"Workspace path is not a directory: {canonical}")
        if not os.access(canonical, os.R_OK | os.X_OK):
            raise InvalidWorkspaceError(
                f"Cannot access workspace directory. Please ensure {canonical} "
                "has read permissions."
            )

        protected_name = self.protected_directories().get(canonical)
        if protected_name is not None:
            logger.warning("protected_workspace_rejected", path=str(canonical))
            raise ProtectedDirectoryError(protected_name)

        identity = WorkspaceIdentity(path=canonical, identity_hash=hash_working_dir(canonical))
        logger.debug(
            "workspace_resolved",
            path=str(identity.path),
            identity=identity.identity_hash
        )
        return identity


def _canonical(path: Path) -> Path:
    try:
        return path.resolve()
    except (OSError, RuntimeError) as e:
        raise InvalidWorkspaceError(f"Cannot resolve workspace path {path}: {e}", cause=e)
