"""
Unit tests for diff presentation.
"""

import pytest
from pathlib import Path

from mcp_checkpoint.checkpoint.diff import (
    DiffPresenter,
    classify,
    create_preview,
    is_binary_content,
    BINARY_PLACEHOLDER,
)
from mcp_checkpoint.checkpoint.snapshot import FileDiff


def file_diff(before: bytes, after: bytes, existed_before=True, exists_after=True) -> FileDiff:
    return FileDiff(
        relative_path="src/a.txt",
        absolute_path=Path("/work/src/a.txt"),
        before=before,
        after=after,
        existed_before=existed_before,
        exists_after=exists_after,
    )


class TestClassify:
    def test_added(self):
        assert classify(file_diff(b"", b"new", existed_before=False)) == "added"

    def test_deleted(self):
        assert classify(file_diff(b"old", b"", exists_after=False)) == "deleted"

    def test_modified(self):
        assert classify(file_diff(b"old", b"new")) == "modified"

    def test_emptied_file_is_modified(self):
        assert classify(file_diff(b"old", b"")) == "modified"


class TestBinaryDetection:
    def test_nul_byte(self):
        assert is_binary_content(b"text\x00more")

    def test_plain_text(self):
        assert not is_binary_content(b"def main():\n    return 0\n")

    def test_high_ratio_of_control_characters(self):
        assert is_binary_content(b"\x01\x02\x03\x04abcdef")

    def test_low_ratio_is_text(self):
        assert not is_binary_content(b"\x01" + b"a" * 50)

    def test_invalid_utf8_counts_as_non_printable(self):
        assert is_binary_content(bytes(range(0x80, 0x100)))


class TestCreatePreview:
    def test_empty_content(self):
        assert create_preview(b"") is None

    def test_binary_placeholder(self):
        assert create_preview(b"\x00\x01\x02") == BINARY_PLACEHOLDER

    def test_short_text_unchanged(self):
        assert create_preview(b"hello") == "hello"

    def test_line_limit_with_note(self):
        content = "\n".join(f"line {i}" for i in range(8)).encode()
        preview = create_preview(content)
        assert preview == "line 0\nline 1\nline 2\nline 3\nline 4\n... (3 more lines)"

    def test_length_limit(self):
        preview = create_preview(b"x" * 500)
        assert len(preview) == 200
        assert preview.endswith("...")

    def test_both_limits(self):
        content = ("y" * 100 + "\n") * 7
        preview = create_preview(content.encode())
        head, note = preview.split("\n... (")
        assert len(head) == 200
        assert head.endswith("...")
        assert note == "3 more lines)"


class TestDiffPresenter:
    def test_present_sizes_and_previews(self):
        entry = DiffPresenter().present(file_diff(b"hello", b"world!"))

        assert entry.relative_path == "src/a.txt"
        assert entry.change_type == "modified"
        assert (entry.before_size, entry.after_size) == (5, 6)
        assert (entry.before_preview, entry.after_preview) == ("hello", "world!")

    def test_to_dict_omits_missing_previews(self):
        entry = DiffPresenter().present(file_diff(b"", b"new", existed_before=False))
        data = entry.to_dict()

        assert data == {
            "relativePath": "src/a.txt",
            "changeType": "added",
            "beforeSize": 0,
            "afterSize": 3,
            "afterPreview": "new",
        }
