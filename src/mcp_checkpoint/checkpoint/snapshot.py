"""Shadow snapshot history for one workspace

Snapshots are content-addressed commits kept in a private object store,
outside of any version control the user runs in the same tree. Each commit
is the canonical JSON of its file tree, parent ref, timestamp and message,
and its ref is the SHA-256 of that JSON.
"""

import asyncio
import json
import os
import re
import secrets
import shutil
import stat
from pathlib import Path, PurePosixPath
from typing import Optional, Dict, Any, List, Tuple, AsyncIterator
from dataclasses import dataclass, field

import aiofiles
import aiofiles.os

from .cas import ContentAddressableStorage
from .exclusions import ExclusionRuleSet, build_rule_set
from .workspace import WorkspaceIdentity
from ..utils.logging import get_logger
from ..utils.errors import (
    StorageError,
    BackendUnavailableError,
    InvalidWorkspaceError,
    SnapshotNotFoundError,
    StagingPartialFailure,
)
from ..utils.formatting import utc_now_iso

# Well-known ref that always resolves to an empty tree
EMPTY_TREE_REF = "0" * 64

REGULAR_MODE = 0o100644
EXECUTABLE_MODE = 0o100755
SYMLINK_MODE = 0o120000

_REF_PATTERN = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class TreeEntry:
    """One tracked path in a snapshot tree"""
    blob: str
    mode: int
    size: int

    @property
    def is_symlink(self) -> bool:
        return self.mode == SYMLINK_MODE

    def to_dict(self) -> Dict[str, Any]:
        return {"blob": self.blob, "mode": self.mode, "size": self.size}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TreeEntry':
        return cls(blob=data["blob"], mode=int(data["mode"]), size=int(data["size"]))


@dataclass(frozen=True)
class Snapshot:
    """An immutable commit in the shadow history"""
    ref: str
    parent_ref: Optional[str]
    created_at: str
    message: str
    tree: Dict[str, TreeEntry] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Commit body; the ref is derived from it, so it is not included"""
        return {
            "tree": {path: entry.to_dict() for path, entry in self.tree.items()},
            "parent_ref": self.parent_ref,
            "created_at": self.created_at,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, ref: str, data: Dict[str, Any]) -> 'Snapshot':
        return cls(
            ref=ref,
            parent_ref=data.get("parent_ref"),
            created_at=data["created_at"],
            message=data.get("message", ""),
            tree={
                path: TreeEntry.from_dict(entry)
                for path, entry in data["tree"].items()
            }
        )


EMPTY_SNAPSHOT = Snapshot(ref=EMPTY_TREE_REF, parent_ref=None, created_at="", message="")


@dataclass
class FileDiff:
    """Content of one changed path on both sides of a comparison"""
    relative_path: str
    absolute_path: Path
    before: bytes
    after: bytes
    existed_before: bool
    exists_after: bool


@dataclass
class StagingReport:
    """Result of staging the live tree"""
    tree: Dict[str, TreeEntry] = field(default_factory=dict)
    failures: List[StagingPartialFailure] = field(default_factory=list)

    @property
    def staged(self) -> int:
        return len(self.tree)


def canonical_json(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def entries_differ(before: Optional[TreeEntry], after: Optional[TreeEntry]) -> bool:
    if before is None or after is None:
        return (before is None) != (after is None)
    return before.blob != after.blob or before.mode != after.mode


def _normalize_mode(st_mode: int) -> int:
    if stat.S_ISLNK(st_mode):
        return SYMLINK_MODE
    return EXECUTABLE_MODE if st_mode & 0o111 else REGULAR_MODE


def _is_trackable(path: str) -> bool:
    """Regular files and symlinks only; FIFOs, sockets and devices are left alone"""
    try:
        st_mode = os.lstat(path).st_mode
    except OSError:
        # Reported by staging when it fails to read the path
        return True
    return stat.S_ISREG(st_mode) or stat.S_ISLNK(st_mode)


class SnapshotStore:
    """Append-only, content-addressed commit chain scoped to one workspace

    Layout under ``<storage_root>/checkpoints/<identity_hash>/``:
    ``cas/`` holds file blobs and commits, ``HEAD`` names the current ref.
    Foreign VCS directories in the workspace are never staged or reset, so
    the user's own repository state is left alone.
    """

    def __init__(
        self,
        identity: WorkspaceIdentity,
        storage_root: Path,
        exclusions_file: Optional[Path] = None,
        compression_level: int = 3,
        logger=None
    ):
        self.identity = identity
        self.workspace = Path(identity.path)
        self.storage_root = Path(storage_root)
        self.exclusions_file = Path(exclusions_file) if exclusions_file else None
        self.base_path = self.storage_root / "checkpoints" / identity.identity_hash
        self.head_path = self.base_path / "HEAD"
        self.logger = logger or get_logger(__name__)

        self.cas = ContentAddressableStorage(
            self.base_path / "cas",
            compression_level=compression_level,
            logger=self.logger
        )
        self._initialized = False

    async def init(self) -> None:
        """Ensure the chain exists; repeat calls are no-ops"""
        if not await aiofiles.os.path.isdir(self.workspace):
            raise InvalidWorkspaceError(f"Workspace directory does not exist: {self.workspace}")
        if self._initialized:
            return

        await self.cas.initialize()
        self._initialized = True

        self.logger.info(
            "snapshot_store_initialized",
            workspace=str(self.workspace),
            identity=self.identity.identity_hash,
            head=await self.read_head()
        )

    def rule_set(self) -> ExclusionRuleSet:
        """Exclusion rules for this operation; rebuilt on every call"""
        return build_rule_set(self.workspace, self.storage_root, self.exclusions_file)

    async def read_head(self) -> Optional[str]:
        try:
            async with aiofiles.open(self.head_path, 'r', encoding='utf-8') as f:
                head = (await f.read()).strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BackendUnavailableError(f"Cannot read HEAD: {e}", cause=e)
        return head or None

    async def _write_head(self, ref: str) -> None:
        temp_path = self.head_path.with_name(f"HEAD.tmp-{secrets.token_hex(4)}")
        try:
            async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
                await f.write(ref + "\n")
            await aiofiles.os.replace(temp_path, self.head_path)
        except OSError as e:
            raise BackendUnavailableError(f"Cannot update HEAD: {e}", cause=e)

    async def get_snapshot(self, ref: str) -> Snapshot:
        """Load and validate a commit"""
        if ref == EMPTY_TREE_REF:
            return EMPTY_SNAPSHOT
        if not isinstance(ref, str) or not _REF_PATTERN.match(ref):
            raise SnapshotNotFoundError(str(ref))

        data = await self.cas.retrieve(ref)
        if data is None:
            raise SnapshotNotFoundError(ref)

        try:
            return Snapshot.from_dict(ref, json.loads(data.decode("utf-8")))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise StorageError(f"Snapshot {ref} is not a valid commit: {e}", cause=e)

    async def _head_snapshot(self) -> Optional[Snapshot]:
        head = await self.read_head()
        return await self.get_snapshot(head) if head else None

    def _scan(self, rule_set: ExclusionRuleSet) -> Tuple[List[str], List[StagingPartialFailure]]:
        """Eligible relative paths under the workspace, excluded directories pruned"""
        candidates: List[str] = []
        failures: List[StagingPartialFailure] = []
        root = str(self.workspace)

        def relative(path: str) -> str:
            rel = os.path.relpath(path, root)
            return "" if rel == "." else PurePosixPath(*Path(rel).parts).as_posix()

        def on_error(error: OSError) -> None:
            failures.append(StagingPartialFailure(
                relative(error.filename or root), error.strerror or str(error)
            ))

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            rel_dir = relative(dirpath)
            kept = []
            for name in dirnames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if os.path.islink(os.path.join(dirpath, name)):
                    # Symlinked directories are tracked as links, never followed
                    if not rule_set.is_excluded(rel):
                        candidates.append(rel)
                elif not rule_set.prunes_directory(rel):
                    kept.append(name)
            dirnames[:] = kept

            for name in filenames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if not rule_set.is_excluded(rel) and _is_trackable(os.path.join(dirpath, name)):
                    candidates.append(rel)

        candidates.sort()
        return candidates, failures

    async def _stage_path(self, relative_path: str) -> Optional[TreeEntry]:
        absolute_path = self.workspace / relative_path
        st = await asyncio.to_thread(os.lstat, absolute_path)

        if stat.S_ISLNK(st.st_mode):
            data = os.fsencode(await asyncio.to_thread(os.readlink, absolute_path))
        elif stat.S_ISREG(st.st_mode):
            async with aiofiles.open(absolute_path, 'rb') as f:
                data = await f.read()
        else:
            return None

        blob = await self.cas.store(data)
        return TreeEntry(blob=blob, mode=_normalize_mode(st.st_mode), size=len(data))

    async def stage(
        self,
        rule_set: ExclusionRuleSet,
        parent: Optional[Snapshot] = None
    ) -> StagingReport:
        """Stage every eligible file of the live tree

        Unreadable paths are recorded as partial failures and, when the
        parent snapshot tracked them, carried forward unchanged.
        """
        paths, failures = await asyncio.to_thread(self._scan, rule_set)
        report = StagingReport(failures=failures)

        for relative_path in paths:
            try:
                entry = await self._stage_path(relative_path)
            except OSError as e:
                report.failures.append(
                    StagingPartialFailure(relative_path, e.strerror or str(e))
                )
                continue
            if entry is not None:
                report.tree[relative_path] = entry

        for failure in report.failures:
            self.logger.warning(
                "staging_partial_failure",
                path=failure.relative_path,
                reason=failure.reason
            )
            if parent is None:
                continue
            prefix = failure.relative_path
            for path, entry in parent.tree.items():
                if not prefix or path == prefix or path.startswith(prefix + "/"):
                    report.tree.setdefault(path, entry)

        report.tree = dict(sorted(report.tree.items()))
        return report

    async def create_snapshot(self, message: str = "") -> str:
        """Stage the live tree, commit it and advance HEAD

        Returns:
            The new snapshot ref
        """
        await self.init()

        parent = await self._head_snapshot()
        report = await self.stage(self.rule_set(), parent)

        snapshot = Snapshot(
            ref="",
            parent_ref=parent.ref if parent else None,
            created_at=utc_now_iso(),
            message=message or "",
            tree=report.tree
        )
        ref = await self.cas.store(canonical_json(snapshot.to_dict()))
        await self._write_head(ref)

        self.logger.info(
            "snapshot_created",
            ref=ref,
            parent_ref=snapshot.parent_ref,
            files=report.staged,
            partial_failures=len(report.failures)
        )
        return ref

    async def _tree_of(self, ref: Optional[str]) -> Dict[str, TreeEntry]:
        """Tree for ref, or the freshly staged live tree when ref is None"""
        if ref is not None:
            return (await self.get_snapshot(ref)).tree
        report = await self.stage(self.rule_set(), await self._head_snapshot())
        return report.tree

    async def _read_blob(self, entry: Optional[TreeEntry]) -> bytes:
        if entry is None:
            return b""
        data = await self.cas.retrieve(entry.blob)
        if data is None:
            raise StorageError(f"Missing object {entry.blob}")
        return data

    async def diff(self, from_ref: str, to_ref: Optional[str] = None) -> AsyncIterator[FileDiff]:
        """Yield changed paths between from_ref and to_ref (or the live tree)

        Paths come in sorted POSIX order. A side where the path does not
        exist yields empty content.
        """
        await self.init()
        before_tree = (await self.get_snapshot(from_ref)).tree
        after_tree = await self._tree_of(to_ref)

        for path in sorted(set(before_tree) | set(after_tree)):
            before = before_tree.get(path)
            after = after_tree.get(path)
            if not entries_differ(before, after):
                continue
            yield FileDiff(
                relative_path=path,
                absolute_path=self.workspace / path,
                before=await self._read_blob(before),
                after=await self._read_blob(after),
                existed_before=before is not None,
                exists_after=after is not None,
            )

    async def diff_count(self, from_ref: str, to_ref: Optional[str] = None) -> int:
        """Number of paths diff() would yield, from tree entries alone"""
        await self.init()
        before_tree = (await self.get_snapshot(from_ref)).tree
        after_tree = await self._tree_of(to_ref)

        return sum(
            1 for path in set(before_tree) | set(after_tree)
            if entries_differ(before_tree.get(path), after_tree.get(path))
        )

    def _workspace_path(self, relative_path: str) -> Path:
        parts = PurePosixPath(relative_path).parts
        if not parts or ".." in parts or PurePosixPath(relative_path).is_absolute():
            raise StorageError(f"Refusing to touch path outside the workspace: {relative_path}")
        return self.workspace.joinpath(*parts)

    def _remove_path(self, relative_path: str) -> bool:
        path = self._workspace_path(relative_path)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except (IsADirectoryError, NotADirectoryError):
            # A tracked file whose path now holds a directory, or sits below a replaced parent
            return False
        return True

    def _clear_conflicts(self, relative_path: str) -> bool:
        """Remove whatever blocks writing relative_path as a file or link

        A non-directory (or symlink) on a parent path and a real directory on
        the path itself are both replaced by the reset.
        """
        path = self._workspace_path(relative_path)

        for parent in reversed(path.relative_to(self.workspace).parents[:-1]):
            blocker = self.workspace / parent
            if os.path.islink(blocker) or (os.path.lexists(blocker) and not os.path.isdir(blocker)):
                os.unlink(blocker)
                return True

        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
            return True
        return False

    def _prune_empty_parents(self, relative_path: str) -> None:
        parent = self._workspace_path(relative_path).parent
        while parent != self.workspace and self.workspace in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    async def _write_entry(self, relative_path: str, entry: TreeEntry) -> None:
        path = self._workspace_path(relative_path)
        data = await self._read_blob(entry)

        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        if await aiofiles.os.path.islink(path):
            await aiofiles.os.remove(path)

        if entry.is_symlink:
            if await asyncio.to_thread(os.path.lexists, path):
                await aiofiles.os.remove(path)
            await asyncio.to_thread(os.symlink, os.fsdecode(data), path)
            return

        if await aiofiles.os.path.exists(path) and not os.access(path, os.W_OK):
            await asyncio.to_thread(os.chmod, path, 0o600)
        async with aiofiles.open(path, 'wb') as f:
            await f.write(data)
        await asyncio.to_thread(os.chmod, path, entry.mode & 0o777)

    async def reset_to(self, target_ref: str) -> int:
        """Hard reset the live tree to target_ref and move HEAD there

        Every target entry is written regardless of the current exclusion
        rules. Live eligible files and HEAD-tracked files absent from the
        target are deleted, and directories emptied by that are removed.
        Anything standing where a target entry needs to go is cleared
        before the delete pass starts.

        Returns:
            Number of paths written or deleted
        """
        await self.init()
        target = await self.get_snapshot(target_ref)
        head = await self._head_snapshot()

        live_paths, _ = await asyncio.to_thread(self._scan, self.rule_set())
        tracked = set(head.tree) if head else set()
        to_delete = sorted((set(live_paths) | tracked) - set(target.tree))

        touched = 0
        try:
            for relative_path in sorted(target.tree):
                if await asyncio.to_thread(self._clear_conflicts, relative_path):
                    touched += 1

            for relative_path in to_delete:
                if await asyncio.to_thread(self._remove_path, relative_path):
                    touched += 1
                    await asyncio.to_thread(self._prune_empty_parents, relative_path)

            for relative_path, entry in sorted(target.tree.items()):
                await self._write_entry(relative_path, entry)
                touched += 1
        except OSError as e:
            self.logger.error("snapshot_reset_failed", target=target_ref, error=str(e))
            raise StorageError(f"Failed to reset workspace to {target_ref}: {e}", cause=e)

        # The empty tree has no commit of its own; HEAD stays where it was
        if target.ref != EMPTY_TREE_REF:
            await self._write_head(target.ref)

        self.logger.info(
            "snapshot_reset",
            target=target_ref,
            written=len(target.tree),
            deleted=len(to_delete)
        )
        return touched

    async def log(self, max_count: int = 50) -> List[str]:
        """Snapshot refs newest first, following parents from HEAD"""
        refs: List[str] = []
        ref = await self.read_head()
        while ref and len(refs) < max_count:
            refs.append(ref)
            ref = (await self.get_snapshot(ref)).parent_ref
        return refs
