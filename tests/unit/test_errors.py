"""
Unit tests for the error hierarchy and formatting helpers.
"""

import pytest
from datetime import datetime, timezone

from mcp_checkpoint.utils.errors import (
    CheckpointMCPError,
    ProtectedDirectoryError,
    BackendUnavailableError,
    SnapshotNotFoundError,
    StagingPartialFailure,
    StorageError,
    CheckpointNotFoundError,
    ValidationError,
    ErrorCategory,
    ErrorSeverity,
)
from mcp_checkpoint.utils.formatting import (
    generate_id,
    time_ago,
    truncate_text,
    parse_timestamp,
)


class TestErrors:
    """Test error codes, messages and serialization."""

    def test_hierarchy(self):
        assert issubclass(BackendUnavailableError, StorageError)
        assert issubclass(SnapshotNotFoundError, StorageError)
        assert issubclass(StagingPartialFailure, CheckpointMCPError)

    def test_protected_directory_message(self):
        error = ProtectedDirectoryError("Desktop")
        assert error.message == "Cannot use checkpoints in Desktop directory"
        assert error.code == "PROTECTED_DIRECTORY"
        assert error.category is ErrorCategory.WORKSPACE

    def test_checkpoint_not_found(self):
        error = CheckpointNotFoundError("deadbeef")
        assert str(error) == "Checkpoint not found: deadbeef"
        assert error.severity is ErrorSeverity.WARNING

    def test_staging_partial_failure_fields(self):
        failure = StagingPartialFailure("src/a.txt", "Permission denied")
        assert failure.relative_path == "src/a.txt"
        assert "Permission denied" in failure.message

    def test_to_dict(self):
        error = BackendUnavailableError("disk full")
        data = error.to_dict()["error"]

        assert data["code"] == "BACKEND_UNAVAILABLE"
        assert data["message"] == "disk full"
        assert data["severity"] == "critical"
        assert data["suggestions"]

    def test_validation_error_suggestions(self):
        error = ValidationError("limit", -1, "must be positive")
        assert "limit" in error.message
        assert any("must be positive" in s for s in error.get_suggestions())

    def test_cause_keeps_traceback(self):
        try:
            raise OSError("boom")
        except OSError as e:
            error = StorageError("wrapped", cause=e)
        assert "OSError: boom" in error.context.stack_trace


class TestFormatting:
    """Test display helpers."""

    def test_generate_id(self):
        ids = {generate_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(len(i) == 16 and int(i, 16) >= 0 for i in ids)

    @pytest.mark.parametrize("seconds,expected", [
        (10, "Just now"),
        (60, "1 minute ago"),
        (150, "2 minutes ago"),
        (3600, "1 hour ago"),
        (2 * 86400, "2 days ago"),
    ])
    def test_time_ago(self, seconds, expected):
        start = "2024-01-01T00:00:00+00:00"
        end = parse_timestamp(start).timestamp() + seconds
        end_iso = datetime.fromtimestamp(end, timezone.utc).isoformat()
        assert time_ago(start, end_iso) == expected

    def test_truncate_text(self):
        assert truncate_text("short", 10) == "short"
        assert truncate_text("a" * 20, 10) == "aaaaaaa..."

    def test_parse_naive_timestamp_as_utc(self):
        assert parse_timestamp("2024-01-01T00:00:00").utcoffset().total_seconds() == 0
        assert parse_timestamp("2024-01-01T00:00:00Z") == parse_timestamp("2024-01-01T00:00:00+00:00")
