"""
Error handling framework for the checkpoint MCP server.

This module provides:
- Hierarchical exception classes for every failure the engine reports
- Error context preservation
- Structured error responses for the operation surface
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import traceback


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    WORKSPACE = "workspace"
    STORAGE = "storage"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    CONCURRENCY = "concurrency"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None


class CheckpointMCPError(Exception):
    """Base exception for all checkpoint server errors."""

    code: str = "CHECKPOINT_ERROR"
    default_message: str = "An error occurred in the checkpoint engine"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.kwargs = kwargs

        if not self.context.stack_trace and cause is not None:
            self.context.stack_trace = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "suggestions": self.get_suggestions(),
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata
                }
            }
        }


# Workspace Errors

class InvalidWorkspaceError(CheckpointMCPError):
    """Workspace path is missing, not a directory, or unreadable."""
    code = "INVALID_WORKSPACE"
    default_message = "Invalid workspace directory"
    category = ErrorCategory.WORKSPACE

    def get_suggestions(self) -> List[str]:
        return [
            "Set CHECKPOINT_WORKSPACE_PATH to an existing directory",
            "Ensure the directory is readable and writable",
        ]


class ProtectedDirectoryError(CheckpointMCPError):
    """Workspace resolves to the home directory or one of its standard folders."""
    code = "PROTECTED_DIRECTORY"
    default_message = "Cannot use checkpoints in a protected directory"
    category = ErrorCategory.WORKSPACE

    def __init__(self, directory: str, **kwargs):
        self.directory = directory
        super().__init__(f"Cannot use checkpoints in {directory} directory", **kwargs)

    def get_suggestions(self) -> List[str]:
        return ["Point the workspace at a project directory instead"]


# Storage Errors

class StorageError(CheckpointMCPError):
    """Snapshot storage errors."""
    code = "STORAGE_ERROR"
    default_message = "Snapshot storage error"
    category = ErrorCategory.STORAGE


class BackendUnavailableError(StorageError):
    """Snapshot backend cannot be created, read or written."""
    code = "BACKEND_UNAVAILABLE"
    default_message = "Snapshot storage backend is unavailable"
    severity = ErrorSeverity.CRITICAL

    def get_suggestions(self) -> List[str]:
        return [
            "Check that CHECKPOINT_STORAGE_PATH is writable",
            "Check free disk space",
        ]


class SnapshotNotFoundError(StorageError):
    """Snapshot reference is not present in the store."""
    code = "SNAPSHOT_NOT_FOUND"
    default_message = "Snapshot not found"

    def __init__(self, ref: str, **kwargs):
        self.ref = ref
        super().__init__(f"Snapshot not found: {ref}", **kwargs)


class StagingPartialFailure(StorageError):
    """One file could not be staged. Recorded and logged, never raised out of staging."""
    code = "STAGING_PARTIAL_FAILURE"
    default_message = "File could not be staged"
    severity = ErrorSeverity.WARNING

    def __init__(self, relative_path: str, reason: str, **kwargs):
        self.relative_path = relative_path
        self.reason = reason
        super().__init__(f"Failed to stage {relative_path}: {reason}", **kwargs)


# Index Errors

class CheckpointNotFoundError(CheckpointMCPError):
    """Checkpoint id is not present in the index."""
    code = "CHECKPOINT_NOT_FOUND"
    default_message = "Checkpoint not found"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, checkpoint_id: str, **kwargs):
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Checkpoint not found: {checkpoint_id}", **kwargs)


class IndexWriteConflictError(CheckpointMCPError):
    """Checkpoint index lock could not be acquired."""
    code = "INDEX_WRITE_CONFLICT"
    default_message = "Checkpoint index is locked by another writer"
    category = ErrorCategory.CONCURRENCY

    def get_suggestions(self) -> List[str]:
        return ["Retry once the other checkpoint operation has finished"]


class CorruptIndexError(CheckpointMCPError):
    """Checkpoint index file exists but does not hold valid records."""
    code = "CORRUPT_INDEX"
    default_message = "Checkpoint index is corrupt"
    category = ErrorCategory.STORAGE
    severity = ErrorSeverity.CRITICAL


class CheckpointCreationError(CheckpointMCPError):
    """Checkpoint could not be created; no record was written."""
    code = "CHECKPOINT_CREATION_FAILED"
    default_message = "Failed to create checkpoint"
    category = ErrorCategory.STORAGE


# Configuration / Validation Errors

class ConfigurationError(CheckpointMCPError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Verify the CHECKPOINT_* environment variables",
        ]


class ValidationError(CheckpointMCPError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            f"Check the value of field '{self.field}'",
            f"Ensure it meets the constraint: {self.constraint}"
        ]


__all__ = [
    'CheckpointMCPError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'InvalidWorkspaceError',
    'ProtectedDirectoryError',
    'StorageError',
    'BackendUnavailableError',
    'SnapshotNotFoundError',
    'StagingPartialFailure',
    'CheckpointNotFoundError',
    'IndexWriteConflictError',
    'CorruptIndexError',
    'CheckpointCreationError',
    'ConfigurationError',
    'ValidationError',
]
