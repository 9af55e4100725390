"""Checkpoint engine

This module provides a Git-like checkpoint system with:
- Workspace resolution and identity
- Exclusion rules for tracked files
- Content-addressable storage with zstd compression
- Snapshot history, diff and hard reset
- A per-workspace checkpoint index
"""

from .workspace import WorkspaceResolver, WorkspaceIdentity, hash_working_dir
from .exclusions import ExclusionRule, ExclusionRuleSet, is_excluded, build_rule_set
from .cas import ContentAddressableStorage
from .snapshot import SnapshotStore, Snapshot, TreeEntry, FileDiff, StagingReport, EMPTY_TREE_REF
from .index import CheckpointIndex, CheckpointRecord
from .diff import DiffPresenter, DiffEntry, create_preview, is_binary_content
from .manager import CheckpointManager

__all__ = [
    "WorkspaceResolver",
    "WorkspaceIdentity",
    "hash_working_dir",
    "ExclusionRule",
    "ExclusionRuleSet",
    "is_excluded",
    "build_rule_set",
    "ContentAddressableStorage",
    "SnapshotStore",
    "Snapshot",
    "TreeEntry",
    "FileDiff",
    "StagingReport",
    "EMPTY_TREE_REF",
    "CheckpointIndex",
    "CheckpointRecord",
    "DiffPresenter",
    "DiffEntry",
    "create_preview",
    "is_binary_content",
    "CheckpointManager",
]
