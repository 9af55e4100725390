"""
Pytest configuration and shared fixtures for checkpoint tests.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from typing import Generator, Dict

from mcp_checkpoint.checkpoint.workspace import WorkspaceResolver, WorkspaceIdentity
from mcp_checkpoint.checkpoint.snapshot import SnapshotStore
from mcp_checkpoint.checkpoint.index import CheckpointIndex
from mcp_checkpoint.checkpoint.manager import CheckpointManager
from mcp_checkpoint.utils.config import CheckpointConfig


def write_files(root: Path, files: Dict[str, str]) -> None:
    """Write relative path -> text content under root."""
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp()).resolve()
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def home_dir(temp_dir: Path) -> Path:
    """Stand-in for the user's home directory."""
    home = temp_dir / "home"
    for name in ("", "Desktop", "Documents", "Downloads"):
        (home / name).mkdir(parents=True, exist_ok=True)
    return home


@pytest.fixture
def workspace(home_dir: Path) -> Path:
    """An empty project directory below the fake home."""
    path = home_dir / "projects" / "demo"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def storage_root(temp_dir: Path) -> Path:
    return temp_dir / "storage"


@pytest.fixture
def resolver(home_dir: Path) -> WorkspaceResolver:
    return WorkspaceResolver(home=home_dir)


@pytest.fixture
def identity(resolver: WorkspaceResolver, workspace: Path) -> WorkspaceIdentity:
    return resolver.resolve(workspace)


@pytest.fixture
def snapshot_store(identity: WorkspaceIdentity, storage_root: Path) -> SnapshotStore:
    return SnapshotStore(identity, storage_root)


@pytest.fixture
def checkpoint_index(identity: WorkspaceIdentity, storage_root: Path) -> CheckpointIndex:
    return CheckpointIndex(storage_root, identity.identity_hash, lock_timeout=1.0)


@pytest.fixture
def checkpoint_config(workspace: Path, storage_root: Path) -> CheckpointConfig:
    return CheckpointConfig(workspace_path=workspace, storage_path=storage_root)


@pytest.fixture
def manager(checkpoint_config: CheckpointConfig, resolver: WorkspaceResolver) -> CheckpointManager:
    return CheckpointManager(
        checkpoint_config,
        resolver=resolver,
        debug_log_path=checkpoint_config.storage_path / "logs" / "debug.log"
    )


@pytest.fixture
def make_files():
    """Helper writing relative path -> text content under a root."""
    return write_files
