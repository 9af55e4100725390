"""Content-addressable storage (CAS) implementation"""

import hashlib
import os
import secrets
import zstandard as zstd
from pathlib import Path
from typing import Optional, Dict, Any
import aiofiles
import aiofiles.os

from ..utils.logging import get_logger
from ..utils.errors import StorageError, BackendUnavailableError


class ContentAddressableStorage:
    """Content-addressable storage with zstd compression

    Stores objects by their content hash (SHA-256) with automatic
    deduplication and compression. Objects are sharded by the first two
    hex characters of their hash and written through a temporary file, so
    a reader never observes a partially written object.
    """

    def __init__(self, storage_path: Path, compression_level: int = 3, logger=None):
        """Initialize CAS

        Args:
            storage_path: Base path for storage
            compression_level: Zstd compression level (1-22, default 3)
            logger: Optional structlog-compatible logger
        """
        self.storage_path = Path(storage_path)
        self.objects_path = self.storage_path / "objects"
        self.compression_level = compression_level
        self.logger = logger or get_logger(__name__)

        self._compressor = zstd.ZstdCompressor(level=compression_level)
        self._decompressor = zstd.ZstdDecompressor()

        self._stats = {
            "objects_stored": 0,
            "bytes_in": 0,
            "bytes_written": 0,
            "dedup_hits": 0,
        }

    async def initialize(self) -> None:
        """Create the object directory; idempotent"""
        try:
            await aiofiles.os.makedirs(self.objects_path, exist_ok=True)
        except OSError as e:
            raise BackendUnavailableError(
                f"Cannot create snapshot storage at {self.storage_path}: {e}", cause=e
            )
        if not os.access(self.objects_path, os.W_OK):
            raise BackendUnavailableError(f"Snapshot storage is not writable: {self.storage_path}")

        self.logger.debug(
            "cas_initialized",
            path=str(self.storage_path),
            compression_level=self.compression_level
        )

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def object_path(self, content_hash: str) -> Path:
        return self.objects_path / content_hash[:2] / content_hash[2:]

    async def store(self, data: bytes) -> str:
        """Store data in CAS

        Args:
            data: Raw data to store

        Returns:
            Content hash (SHA-256)
        """
        content_hash = self.hash_bytes(data)
        object_path = self.object_path(content_hash)

        if await aiofiles.os.path.exists(object_path):
            self._stats["dedup_hits"] += 1
            return content_hash

        compressed_data = self._compressor.compress(data)
        temp_path = object_path.with_name(f"{object_path.name}.tmp-{secrets.token_hex(4)}")

        try:
            await aiofiles.os.makedirs(object_path.parent, exist_ok=True)
            async with aiofiles.open(temp_path, 'wb') as f:
                await f.write(compressed_data)
            await aiofiles.os.replace(temp_path, object_path)
        except OSError as e:
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise BackendUnavailableError(f"Failed to write object {content_hash}: {e}", cause=e)

        self._stats["objects_stored"] += 1
        self._stats["bytes_in"] += len(data)
        self._stats["bytes_written"] += len(compressed_data)

        return content_hash

    async def retrieve(self, content_hash: str) -> Optional[bytes]:
        """Retrieve data from CAS

        Args:
            content_hash: Content hash to retrieve

        Returns:
            Raw data or None if not found
        """
        object_path = self.object_path(content_hash)

        try:
            async with aiofiles.open(object_path, 'rb') as f:
                compressed_data = await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BackendUnavailableError(f"Failed to read object {content_hash}: {e}", cause=e)

        try:
            data = self._decompressor.decompress(compressed_data)
        except zstd.ZstdError as e:
            self.logger.error("cas_object_corrupt", hash=content_hash, error=str(e))
            raise StorageError(f"Failed to decompress object {content_hash}: {e}", cause=e)

        actual_hash = self.hash_bytes(data)
        if actual_hash != content_hash:
            raise StorageError(f"Hash mismatch: expected {content_hash}, got {actual_hash}")

        return data

    async def exists(self, content_hash: str) -> bool:
        """Check if object exists"""
        return await aiofiles.os.path.exists(self.object_path(content_hash))

    def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics for this instance"""
        stats = dict(self._stats)
        stats["compression_ratio"] = (
            stats["bytes_written"] / stats["bytes_in"] if stats["bytes_in"] else 0.0
        )
        return stats
