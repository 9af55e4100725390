"""Checkpoint operations for one configured workspace"""

import asyncio
from pathlib import Path
from typing import Optional, Dict, Any, List

import aiofiles

from .workspace import WorkspaceResolver, WorkspaceIdentity
from .snapshot import SnapshotStore, EMPTY_TREE_REF
from .index import CheckpointIndex, CheckpointRecord
from .diff import DiffPresenter
from ..utils.config import CheckpointConfig
from ..utils.logging import (
    get_logger,
    get_debug_log_path,
    clear_debug_log,
    log_function_call,
    DEBUG_LOG_NAME,
)
from ..utils.errors import (
    CheckpointMCPError,
    CheckpointCreationError,
    CheckpointNotFoundError,
    InvalidWorkspaceError,
    ProtectedDirectoryError,
    ValidationError,
    ErrorContext,
)
from ..utils.formatting import (
    generate_id,
    utc_now_iso,
    format_timestamp,
    time_ago,
    truncate_text,
)

logger = get_logger(__name__)

SHORT_REF_LENGTH = 7
TIMELINE_MESSAGE_LENGTH = 80


def _positive(field: str, value: Optional[int], default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(field, value, "must be a positive integer")
    return value


class CheckpointManager:
    """Composes workspace resolution, snapshot history and the checkpoint index

    Nothing is cached between calls: every operation resolves the workspace
    and re-reads the index. Operations on one workspace identity run one
    at a time.
    """

    def __init__(
        self,
        config: CheckpointConfig,
        resolver: Optional[WorkspaceResolver] = None,
        logger=None,
        debug_log_path: Optional[Path] = None
    ):
        self.config = config
        self.resolver = resolver or WorkspaceResolver()
        self.logger = logger or get_logger(__name__)
        self.debug_log_path = debug_log_path
        self.presenter = DiffPresenter()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _resolve(self) -> WorkspaceIdentity:
        self.config.validate_paths()
        return self.resolver.resolve(self.config.workspace_path)

    def _lock_for(self, identity: WorkspaceIdentity) -> asyncio.Lock:
        return self._locks.setdefault(identity.identity_hash, asyncio.Lock())

    def snapshot_store(self, identity: WorkspaceIdentity) -> SnapshotStore:
        return SnapshotStore(
            identity,
            self.config.storage_path,
            exclusions_file=self.config.exclusions_file,
            compression_level=self.config.compression_level,
            logger=self.logger
        )

    def index(self, identity: WorkspaceIdentity) -> CheckpointIndex:
        return CheckpointIndex(
            self.config.storage_path,
            identity.identity_hash,
            lock_timeout=self.config.lock_timeout,
            logger=self.logger
        )

    @log_function_call(logger)
    async def create_checkpoint(self, message: Optional[str] = None) -> Dict[str, Any]:
        """Snapshot the workspace and record a checkpoint

        The previous checkpoint is read before the snapshot is taken, so
        filesChanged is the delta from that checkpoint. Nothing is recorded
        when any step before the append fails.
        """
        # Workspace errors surface unchanged, before any storage is touched
        identity = self._resolve()

        async with self._lock_for(identity):
            store = self.snapshot_store(identity)
            index = self.index(identity)

            try:
                await store.init()
                previous = await index.latest()
                snapshot_ref = await store.create_snapshot(message or "")

                if previous is None:
                    files_changed = await store.diff_count(EMPTY_TREE_REF, snapshot_ref)
                elif previous.snapshot_ref == snapshot_ref:
                    files_changed = 0
                else:
                    files_changed = await store.diff_count(previous.snapshot_ref, snapshot_ref)
            except (InvalidWorkspaceError, ProtectedDirectoryError):
                raise
            except (CheckpointMCPError, OSError) as e:
                reason = e.message if isinstance(e, CheckpointMCPError) else str(e)
                raise CheckpointCreationError(
                    f"Failed to create checkpoint: {reason}",
                    context=ErrorContext(
                        component="checkpoint_manager",
                        operation="create_checkpoint",
                        metadata={"workspace": str(identity.path)}
                    ),
                    cause=e
                ) from e

            record = CheckpointRecord(
                id=generate_id(),
                timestamp=utc_now_iso(),
                snapshot_ref=snapshot_ref,
                files_changed=files_changed,
                workspace_hash=identity.identity_hash,
                message=message,
            )
            await index.append(record)

        self.logger.info(
            "checkpoint_created",
            checkpoint_id=record.id,
            snapshot_ref=snapshot_ref,
            files_changed=files_changed
        )

        return {
            "checkpointId": record.id,
            "timestamp": record.timestamp,
            "filesChanged": record.files_changed,
            "snapshotRef": record.snapshot_ref,
        }

    async def list_checkpoints(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Timeline entries, newest first"""
        limit = _positive("limit", limit, self.config.timeline_limit)
        identity = self._resolve()

        records = (await self.index(identity).list_descending())[:limit]
        now = utc_now_iso()

        timeline = []
        for record in records:
            entry = {
                "id": record.id,
                "timestamp": record.timestamp,
                "formattedTimestamp": format_timestamp(record.timestamp),
                "timeAgo": time_ago(record.timestamp, now),
                "filesChanged": record.files_changed,
                "snapshotRef": record.snapshot_ref[:SHORT_REF_LENGTH],
            }
            if record.message:
                entry["message"] = truncate_text(record.message, TIMELINE_MESSAGE_LENGTH)
            timeline.append(entry)

        self.logger.debug("timeline_listed", count=len(timeline))
        return timeline

    async def rollback(self, checkpoint_id: str) -> Dict[str, Any]:
        """Hard reset the workspace to a checkpoint

        Never raises: failures come back as success=False. Later records
        are kept, so history stays forward-only.
        """
        try:
            identity = self._resolve()
            async with self._lock_for(identity):
                store = self.snapshot_store(identity)
                index = self.index(identity)

                target = await index.get(checkpoint_id)
                if target is None:
                    raise CheckpointNotFoundError(checkpoint_id)

                latest = await index.latest()
                files_restored = 0
                if latest is not None and latest.id != target.id:
                    files_restored = await store.diff_count(target.snapshot_ref, latest.snapshot_ref)

                await store.reset_to(target.snapshot_ref)
        except Exception as e:
            reason = e.message if isinstance(e, CheckpointMCPError) else str(e)
            self.logger.error(
                "checkpoint_rollback_failed",
                checkpoint_id=checkpoint_id,
                error=reason,
                error_type=type(e).__name__
            )
            return {
                "success": False,
                "filesRestored": 0,
                "message": f"Failed to rollback to checkpoint: {reason}",
                "checkpointId": checkpoint_id,
            }

        self.logger.info(
            "checkpoint_rolled_back",
            checkpoint_id=checkpoint_id,
            snapshot_ref=target.snapshot_ref,
            files_restored=files_restored
        )
        return {
            "success": True,
            "filesRestored": files_restored,
            "message": (
                f'Successfully rolled back to checkpoint "{target.message or "Unnamed"}" '
                f"from {format_timestamp(target.timestamp)}"
            ),
            "checkpointId": checkpoint_id,
        }

    async def diff(
        self,
        from_checkpoint_id: str,
        to_checkpoint_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Changes between two checkpoints, or from one to the live workspace"""
        identity = self._resolve()

        async with self._lock_for(identity):
            store = self.snapshot_store(identity)
            index = self.index(identity)

            from_record = await index.get(from_checkpoint_id)
            if from_record is None:
                raise CheckpointNotFoundError(from_checkpoint_id)

            to_ref = None
            if to_checkpoint_id:
                to_record = await index.get(to_checkpoint_id)
                if to_record is None:
                    raise CheckpointNotFoundError(to_checkpoint_id)
                to_ref = to_record.snapshot_ref

            changes = [
                self.presenter.present(file_diff).to_dict()
                async for file_diff in store.diff(from_record.snapshot_ref, to_ref)
            ]

        self.logger.info(
            "checkpoint_diff_generated",
            from_id=from_checkpoint_id,
            to_id=to_checkpoint_id or "current",
            files=len(changes)
        )
        return {
            "fromId": from_checkpoint_id,
            "toId": to_checkpoint_id,
            "totalFiles": len(changes),
            "changes": changes,
        }

    async def status(self) -> Dict[str, Any]:
        identity = self._resolve()
        records = await self.index(identity).list_descending()
        latest = records[0] if records else None

        return {
            "currentCheckpoint": (
                f"{latest.id} ({format_timestamp(latest.timestamp)})" if latest else None
            ),
            "totalCheckpoints": len(records),
            "workspaceIdentity": identity.identity_hash,
            "workspacePath": str(identity.path),
            "storagePath": str(self.config.storage_path),
        }

    async def cleanup(self, max_age_days: Optional[int] = None) -> Dict[str, Any]:
        """Drop checkpoint records older than max_age_days; snapshots are kept"""
        max_age_days = _positive("max_age_days", max_age_days, self.config.cleanup_age_days)
        identity = self._resolve()

        async with self._lock_for(identity):
            index = self.index(identity)
            removed = await index.prune_older_than(max_age_days)
            remaining = await index.count()

        return {"removed": removed, "remaining": remaining}

    def _debug_log(self) -> Path:
        return Path(
            self.debug_log_path
            or get_debug_log_path()
            or self.config.storage_path / "logs" / DEBUG_LOG_NAME
        )

    async def view_debug_log(self, lines: int = 50) -> Dict[str, Any]:
        """Last lines of the debug log"""
        lines = _positive("lines", lines, 50)
        log_path = self._debug_log()

        try:
            async with aiofiles.open(log_path, 'r', encoding='utf-8', errors='replace') as f:
                content = await f.read()
        except OSError as e:
            return {
                "logPath": str(log_path),
                "totalLines": 0,
                "lines": [f"Debug log not found or empty. Error: {e}"],
            }

        all_lines = [line for line in content.split("\n") if line.strip()]
        return {
            "logPath": str(log_path),
            "totalLines": len(all_lines),
            "lines": all_lines[-lines:],
        }

    async def clear_debug_log(self) -> Dict[str, Any]:
        try:
            await asyncio.to_thread(clear_debug_log, self._debug_log())
        except OSError as e:
            return {"success": False, "message": f"Failed to clear debug log: {e}"}
        return {"success": True, "message": "Debug log cleared successfully"}
