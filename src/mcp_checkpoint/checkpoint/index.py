"""Checkpoint index: the per-workspace list of user-visible checkpoints"""

import asyncio
import fcntl
import json
import os
import secrets
import time
from pathlib import Path
from typing import Optional, Dict, Any, List
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import aiofiles
import aiofiles.os

from .exclusions import METADATA_FILENAME
from ..utils.logging import get_logger
from ..utils.errors import CorruptIndexError, IndexWriteConflictError, StorageError
from ..utils.formatting import parse_timestamp


@dataclass(frozen=True)
class CheckpointRecord:
    """A named point in a workspace's history"""
    id: str
    timestamp: str
    snapshot_ref: str
    files_changed: int
    workspace_hash: str
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "timestamp": self.timestamp,
            "snapshotRef": self.snapshot_ref,
            "filesChanged": self.files_changed,
            "workspaceHash": self.workspace_hash,
        }
        if self.message is not None:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CheckpointRecord':
        """Validate and build a record; anything malformed is a corrupt index"""
        if not isinstance(data, dict):
            raise CorruptIndexError(f"Checkpoint record is not an object: {data!r}")

        snapshot_ref = data.get("snapshotRef", data.get("commitHash"))
        required = {
            "id": data.get("id"),
            "timestamp": data.get("timestamp"),
            "snapshotRef": snapshot_ref,
            "workspaceHash": data.get("workspaceHash"),
        }
        for key, value in required.items():
            if not isinstance(value, str) or not value:
                raise CorruptIndexError(f"Checkpoint record has invalid '{key}': {value!r}")

        files_changed = data.get("filesChanged")
        if isinstance(files_changed, bool) or not isinstance(files_changed, int) or files_changed < 0:
            raise CorruptIndexError(
                f"Checkpoint record {required['id']} has invalid 'filesChanged': {files_changed!r}"
            )

        message = data.get("message")
        if message is not None and not isinstance(message, str):
            raise CorruptIndexError(
                f"Checkpoint record {required['id']} has invalid 'message': {message!r}"
            )

        try:
            parse_timestamp(required["timestamp"])
        except ValueError as e:
            raise CorruptIndexError(
                f"Checkpoint record {required['id']} has invalid 'timestamp'", cause=e
            )

        return cls(
            id=required["id"],
            timestamp=required["timestamp"],
            snapshot_ref=snapshot_ref,
            files_changed=files_changed,
            workspace_hash=required["workspaceHash"],
            message=message,
        )


class CheckpointIndex:
    """JSON list of CheckpointRecords at ``checkpoints/<identity>/metadata.json``

    Every update is a read-modify-write under an in-process asyncio lock
    and a cross-process flock on a sibling ``.lock`` file. The new content
    is written to a temporary file and renamed into place.
    """

    def __init__(
        self,
        storage_root: Path,
        identity_hash: str,
        lock_timeout: float = 10.0,
        logger=None
    ):
        self.identity_hash = identity_hash
        self.directory = Path(storage_root) / "checkpoints" / identity_hash
        self.path = self.directory / METADATA_FILENAME
        self.lock_path = self.directory / f"{METADATA_FILENAME}.lock"
        self.lock_timeout = lock_timeout
        self.logger = logger or get_logger(__name__)
        self._lock = asyncio.Lock()

    async def _load(self) -> List[CheckpointRecord]:
        try:
            async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
                content = await f.read()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"Cannot read checkpoint index {self.path}: {e}", cause=e)

        if not content.strip():
            return []

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            self.logger.error("checkpoint_index_corrupt", path=str(self.path), error=str(e))
            raise CorruptIndexError(f"Checkpoint index is not valid JSON: {self.path}", cause=e)

        if not isinstance(data, list):
            raise CorruptIndexError(f"Checkpoint index is not a list: {self.path}")

        return [CheckpointRecord.from_dict(item) for item in data]

    async def _save(self, records: List[CheckpointRecord]) -> None:
        payload = json.dumps([r.to_dict() for r in records], indent=2)
        temp_path = self.path.with_name(f"{METADATA_FILENAME}.tmp-{secrets.token_hex(4)}")
        try:
            async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
                await f.write(payload)
            await aiofiles.os.replace(temp_path, self.path)
        except OSError as e:
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise StorageError(f"Cannot write checkpoint index {self.path}: {e}", cause=e)

    async def _acquire_file_lock(self) -> int:
        await aiofiles.os.makedirs(self.directory, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        deadline = time.monotonic() + self.lock_timeout

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return fd
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    self.logger.warning(
                        "checkpoint_index_lock_timeout",
                        path=str(self.lock_path),
                        timeout=self.lock_timeout
                    )
                    raise IndexWriteConflictError(
                        f"Timed out after {self.lock_timeout}s waiting for {self.lock_path}"
                    )
                await asyncio.sleep(0.05)

    @staticmethod
    def _release_file_lock(fd: int) -> None:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    async def _update(self, mutate) -> List[CheckpointRecord]:
        """Run mutate(records) -> records inside the critical section"""
        async with self._lock:
            fd = await self._acquire_file_lock()
            try:
                records = await self._load()
                updated = mutate(records)
                if updated is not records:
                    await self._save(updated)
                return updated
            finally:
                self._release_file_lock(fd)

    async def append(self, record: CheckpointRecord) -> None:
        await self._update(lambda records: [*records, record])
        self.logger.info(
            "checkpoint_record_appended",
            checkpoint_id=record.id,
            snapshot_ref=record.snapshot_ref,
            files_changed=record.files_changed
        )

    async def get(self, checkpoint_id: str) -> Optional[CheckpointRecord]:
        for record in await self._load():
            if record.id == checkpoint_id:
                return record
        return None

    async def list_descending(self) -> List[CheckpointRecord]:
        """Records newest first; equal timestamps keep insertion order"""
        records = await self._load()
        return sorted(records, key=lambda r: parse_timestamp(r.timestamp), reverse=True)

    async def latest(self) -> Optional[CheckpointRecord]:
        records = await self.list_descending()
        return records[0] if records else None

    async def count(self) -> int:
        return len(await self._load())

    async def prune_older_than(self, days: float) -> int:
        """Drop records older than now - days; snapshot history is untouched

        Returns:
            Number of records removed
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        removed = 0

        def mutate(records: List[CheckpointRecord]) -> List[CheckpointRecord]:
            nonlocal removed
            kept = [r for r in records if parse_timestamp(r.timestamp) >= cutoff]
            removed = len(records) - len(kept)
            return kept if removed else records

        await self._update(mutate)

        if removed:
            self.logger.info("checkpoint_records_pruned", removed=removed, max_age_days=days)
        return removed
