"""Exclusion rules deciding which workspace files are tracked

Rules are rebuilt for every operation because the workspace's own
large-file marker list (.gitattributes) can change between calls.
"""

import re
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional, List, Iterable, Tuple, Pattern
from dataclasses import dataclass, field

from ..utils.logging import get_logger
from ..utils.errors import ConfigurationError

logger = get_logger(__name__)

# Engine bookkeeping; never tracked
INTERNAL_DIR_NAME = ".mcp-checkpoint"
METADATA_FILENAME = "metadata.json"

OS_NOISE_NAMES = frozenset({".DS_Store", "Thumbs.db", "desktop.ini", "Icon\r"})
APPLEDOUBLE_PREFIX = "._"

# Foreign version-control state is left exactly as the user has it
VCS_DIR_NAMES = frozenset({".git", ".hg", ".svn", ".bzr"})

LFS_ATTRIBUTES_FILE = ".gitattributes"


def _build_exclusions() -> List[str]:
    return [
        ".gradle/", ".idea/", ".parcel-cache/", ".pytest_cache/", ".mypy_cache/",
        ".ruff_cache/", ".tox/", ".next/", ".nuxt/", ".sass-cache/", ".turbo/",
        ".vs/", ".vscode/", "Pods/", "__pycache__/", "bin/", "build/", "bundle/",
        "coverage/", "deps/", "dist/", "env/", "node_modules/", "obj/", "out/",
        "pkg/", "target/dependency/", "temp/", "vendor/", "venv/", ".venv/",
        "*.egg-info/",
    ]


def _media_exclusions() -> List[str]:
    return [
        "*.jpg", "*.jpeg", "*.png", "*.gif", "*.bmp", "*.ico", "*.webp", "*.tiff",
        "*.tif", "*.raw", "*.heic", "*.avif", "*.eps", "*.psd", "*.3gp", "*.aac",
        "*.aiff", "*.asf", "*.avi", "*.divx", "*.flac", "*.m4a", "*.m4v", "*.mkv",
        "*.mov", "*.mp3", "*.mp4", "*.mpeg", "*.mpg", "*.ogg", "*.opus", "*.rm",
        "*.rmvb", "*.vob", "*.wav", "*.webm", "*.wma", "*.wmv",
    ]


def _cache_exclusions() -> List[str]:
    return [
        "*.bak", "*.cache", "*.crdownload", "*.dmp", "*.dump", "*.eslintcache",
        "*.lock", "*.log", "*.old", "*.part", "*.partial", "*.pyc", "*.pyo",
        "*.stackdump", "*.swo", "*.swp", "*.temp", "*.tmp",
    ]


def _secret_exclusions() -> List[str]:
    return [
        ".env", "*.env*", "*.local", "*.development", "*.production",
        "*.pem", "*.key", "*.p12", "*.pfx", "id_rsa", "id_ed25519", ".netrc",
    ]


def _binary_exclusions() -> List[str]:
    return [
        "*.zip", "*.tar", "*.gz", "*.tgz", "*.bz2", "*.xz", "*.rar", "*.7z",
        "*.iso", "*.bin", "*.exe", "*.dll", "*.so", "*.dylib", "*.dat", "*.dmg",
        "*.msi", "*.class", "*.jar", "*.o", "*.a", "*.wasm",
    ]


def _database_exclusions() -> List[str]:
    return [
        "*.arrow", "*.accdb", "*.aof", "*.avro", "*.bson", "*.db", "*.dbf",
        "*.frm", "*.ibd", "*.mdb", "*.myd", "*.myi", "*.orc", "*.parquet",
        "*.pdb", "*.rdb", "*.sqlite", "*.sqlite3", "*.shp", "*.shx", "*.gpkg",
    ]


def _log_exclusions() -> List[str]:
    return [
        "*.error", "*.logs", "*.stdout", "npm-debug.log*", "yarn-debug.log*",
        "yarn-error.log*",
    ]


def default_exclusions(extra_patterns: Optional[Iterable[str]] = None) -> List[str]:
    """Default exclusion catalog, augmented by extra patterns (LFS, user file)"""
    patterns = [
        *_build_exclusions(),
        *_media_exclusions(),
        *_cache_exclusions(),
        *_secret_exclusions(),
        *_binary_exclusions(),
        *_database_exclusions(),
        *_log_exclusions(),
    ]
    seen = set(patterns)
    for pattern in extra_patterns or ():
        if pattern and pattern not in seen:
            patterns.append(pattern)
            seen.add(pattern)
    return patterns


class RuleKind(Enum):
    DIRECTORY = "directory"
    EXTENSION = "extension"
    WILDCARD = "wildcard"
    EXACT = "exact"


def _glob_to_regex(pattern: str) -> str:
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return "".join(parts)


@dataclass(frozen=True)
class ExclusionRule:
    """One exclusion pattern with its matching semantics"""
    pattern: str
    kind: RuleKind
    regex: Optional[Pattern] = field(default=None, compare=False)

    @classmethod
    def parse(cls, pattern: str) -> "ExclusionRule":
        if pattern.endswith("/"):
            return cls(pattern, RuleKind.DIRECTORY)

        has_wildcard = "*" in pattern or "?" in pattern
        if pattern.startswith("*.") and not any(c in pattern[1:] for c in "*?"):
            return cls(pattern, RuleKind.EXTENSION)
        if has_wildcard:
            try:
                regex = re.compile(_glob_to_regex(pattern))
            except re.error:
                logger.warning("exclusion_pattern_invalid", pattern=pattern)
                regex = None
            return cls(pattern, RuleKind.WILDCARD, regex)
        return cls(pattern, RuleKind.EXACT)

    def matches(self, relative_path: str) -> bool:
        basename = relative_path.rsplit("/", 1)[-1]

        if self.kind is RuleKind.DIRECTORY:
            directory = self.pattern.rstrip("/").lstrip("/")
            if relative_path == directory or relative_path.startswith(directory + "/"):
                return True
            if "/" in directory:
                return False
            # Single-segment directory names match at any depth
            components = relative_path.split("/")[:-1] if relative_path else []
            if any(self._component_matches(c, directory) for c in components):
                return True
            return self._component_matches(basename, directory)

        if self.kind is RuleKind.EXTENSION:
            return relative_path.endswith(self.pattern[1:])

        if self.kind is RuleKind.WILDCARD:
            if self.regex is None:
                return relative_path == self.pattern
            return bool(self.regex.fullmatch(relative_path) or self.regex.fullmatch(basename))

        return relative_path == self.pattern or basename == self.pattern

    @staticmethod
    def _component_matches(component: str, directory: str) -> bool:
        if "*" in directory or "?" in directory:
            return re.fullmatch(_glob_to_regex(directory), component) is not None
        return component == directory


@dataclass(frozen=True)
class ExclusionRuleSet:
    """Ordered exclusion rules plus the engine's own internal paths"""
    rules: Tuple[ExclusionRule, ...]
    internal_prefixes: Tuple[str, ...] = ()

    @classmethod
    def from_patterns(
        cls,
        patterns: Iterable[str],
        internal_prefixes: Iterable[str] = ()
    ) -> "ExclusionRuleSet":
        return cls(
            rules=tuple(ExclusionRule.parse(p) for p in patterns),
            internal_prefixes=tuple(p.strip("/") for p in internal_prefixes if p.strip("/")),
        )

    @property
    def patterns(self) -> List[str]:
        return [rule.pattern for rule in self.rules]

    def is_excluded(self, relative_path: str) -> bool:
        return is_excluded(relative_path, self)

    def prunes_directory(self, relative_dir: str) -> bool:
        """True when nothing below relative_dir can be tracked"""
        return is_excluded(relative_dir, self)


def is_excluded(relative_path: str, rule_set: ExclusionRuleSet) -> bool:
    """Decide whether a workspace-relative POSIX path is excluded from tracking"""
    path = relative_path.strip("/")
    if not path:
        return False
    components = path.split("/")
    basename = components[-1]

    # Engine bookkeeping
    if INTERNAL_DIR_NAME in path or basename == METADATA_FILENAME:
        return True
    for prefix in rule_set.internal_prefixes:
        if path == prefix or path.startswith(prefix + "/"):
            return True

    # OS and foreign VCS noise
    if basename in OS_NOISE_NAMES or basename.startswith(APPLEDOUBLE_PREFIX):
        return True
    if any(component in VCS_DIR_NAMES for component in components):
        return True

    for rule in rule_set.rules:
        if rule.matches(path):
            return True
    return False


def read_lfs_patterns(workspace: Path) -> List[str]:
    """Patterns the workspace routes through Git LFS (large files)"""
    attributes = Path(workspace) / LFS_ATTRIBUTES_FILE
    try:
        content = attributes.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("lfs_attributes_unreadable", path=str(attributes), error=str(e))
        return []

    patterns = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "filter=lfs" not in line:
            continue
        patterns.append(line.split()[0])
    return patterns


def read_exclusions_file(path: Path) -> List[str]:
    """User-supplied exclusion patterns, one per line"""
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read exclusions file {path}: {e}", cause=e)

    return [
        line.strip() for line in content.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]


def build_rule_set(
    workspace: Path,
    storage_root: Optional[Path] = None,
    exclusions_file: Optional[Path] = None,
) -> ExclusionRuleSet:
    """Assemble the rule set for one operation on workspace"""
    extra = read_lfs_patterns(workspace)
    if exclusions_file is not None:
        extra.extend(read_exclusions_file(exclusions_file))

    internal: List[str] = []
    if storage_root is not None:
        try:
            relative = Path(storage_root).resolve().relative_to(Path(workspace).resolve())
        except ValueError:
            relative = None
        if relative is not None and str(relative) not in ("", "."):
            internal.append(PurePosixPath(*relative.parts).as_posix())

    rule_set = ExclusionRuleSet.from_patterns(default_exclusions(extra), internal)
    logger.debug(
        "exclusion_rules_built",
        rules=len(rule_set.rules),
        extra=len(extra),
        internal=list(rule_set.internal_prefixes)
    )
    return rule_set
