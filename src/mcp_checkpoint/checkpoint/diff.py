"""Turn raw file diffs into display-ready change entries"""

import re
from typing import Optional, Dict, Any, Union
from dataclasses import dataclass

from .snapshot import FileDiff
from ..utils.formatting import truncate_text

BINARY_PLACEHOLDER = "[Binary content]"
BINARY_RATIO = 0.1

_NON_PRINTABLE = re.compile(r"[\x00-\x08\x0E-\x1F\x7F-\xFF\ufffd]")


@dataclass
class DiffEntry:
    """One file's change between two points"""
    relative_path: str
    change_type: str
    before_size: int
    after_size: int
    before_preview: Optional[str] = None
    after_preview: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "relativePath": self.relative_path,
            "changeType": self.change_type,
            "beforeSize": self.before_size,
            "afterSize": self.after_size,
        }
        if self.before_preview is not None:
            data["beforePreview"] = self.before_preview
        if self.after_preview is not None:
            data["afterPreview"] = self.after_preview
        return data


def classify(file_diff: FileDiff) -> str:
    if not file_diff.existed_before:
        return "added"
    if not file_diff.exists_after:
        return "deleted"
    return "modified"


def _as_text(content: Union[bytes, str]) -> str:
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return content


def is_binary_content(content: Union[bytes, str]) -> bool:
    """NUL present, or more than 10% of decoded characters non-printable"""
    if isinstance(content, bytes) and b"\x00" in content:
        return True

    text = _as_text(content)
    if not text:
        return False
    if "\x00" in text:
        return True
    return len(_NON_PRINTABLE.findall(text)) / len(text) > BINARY_RATIO


def create_preview(
    content: Union[bytes, str],
    max_lines: int = 5,
    max_length: int = 200
) -> Optional[str]:
    if not content:
        return None
    if is_binary_content(content):
        return BINARY_PLACEHOLDER

    lines = _as_text(content).split("\n")
    preview = "\n".join(lines[:max_lines])
    if len(preview) > max_length:
        preview = truncate_text(preview, max_length)
    if len(lines) > max_lines:
        preview += f"\n... ({len(lines) - max_lines} more lines)"
    return preview


class DiffPresenter:
    """Formats FileDiffs for the operation surface"""

    def __init__(self, max_lines: int = 5, max_length: int = 200):
        self.max_lines = max_lines
        self.max_length = max_length

    def present(self, file_diff: FileDiff) -> DiffEntry:
        return DiffEntry(
            relative_path=file_diff.relative_path,
            change_type=classify(file_diff),
            before_size=len(file_diff.before),
            after_size=len(file_diff.after),
            before_preview=create_preview(file_diff.before, self.max_lines, self.max_length),
            after_preview=create_preview(file_diff.after, self.max_lines, self.max_length),
        )
