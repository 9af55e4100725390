"""
Configuration loader for the checkpoint MCP server.

This module provides configuration management with:
- Multiple configuration sources (JSON/YAML/TOML files, env vars, dicts)
- Schema validation through pydantic
- Priority-ordered merging
"""

import os
import json
import yaml
from pathlib import Path
from typing import Optional, Dict, Any, List, Union, Mapping
import toml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict
import asyncio

from .logging import get_logger
from .errors import ConfigurationError, InvalidWorkspaceError


logger = get_logger("mcp-checkpoint.config")

DEFAULT_STORAGE_DIR = ".mcp-checkpoint"

# Environment variable -> (section, field)
ENV_VARS: Dict[str, tuple] = {
    "CHECKPOINT_WORKSPACE_PATH": ("checkpoint", "workspace_path"),
    "CHECKPOINT_STORAGE_PATH": ("checkpoint", "storage_path"),
    "CHECKPOINT_EXCLUSIONS_FILE": ("checkpoint", "exclusions_file"),
    "CHECKPOINT_COMPRESSION_LEVEL": ("checkpoint", "compression_level"),
    "CHECKPOINT_CLEANUP_AGE_DAYS": ("checkpoint", "cleanup_age_days"),
    "CHECKPOINT_LOCK_TIMEOUT": ("checkpoint", "lock_timeout"),
    "CHECKPOINT_LOG_LEVEL": ("logging", "level"),
    "CHECKPOINT_LOG_DIR": ("logging", "directory"),
    "CHECKPOINT_DEBUG": (None, "debug"),
}

PATH_FIELDS = frozenset({"workspace_path", "storage_path", "exclusions_file", "directory"})


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"

    model_config = ConfigDict(arbitrary_types_allowed=True)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Optional[Path] = None
    max_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v not in ("json", "console"):
            raise ValueError(f"Invalid log format: {v}")
        return v


class CheckpointConfig(BaseModel):
    """Checkpoint engine configuration."""
    workspace_path: Path = Field(default_factory=Path.cwd)
    storage_path: Path = Field(default_factory=lambda: Path.home() / DEFAULT_STORAGE_DIR)
    exclusions_file: Optional[Path] = None
    compression_level: int = 3
    cleanup_age_days: int = 30
    lock_timeout: float = 10.0
    timeline_limit: int = 20

    @field_validator('workspace_path', 'storage_path')
    @classmethod
    def validate_path(cls, v):
        """Ensure path is absolute."""
        return Path(v).expanduser().absolute()

    @field_validator('exclusions_file')
    @classmethod
    def validate_exclusions_file(cls, v):
        if v is None or str(v) == "":
            return None
        return Path(v).expanduser().absolute()

    @field_validator('compression_level')
    @classmethod
    def validate_compression_level(cls, v):
        if not 1 <= v <= 22:
            raise ValueError("compression_level must be between 1 and 22")
        return v

    @field_validator('cleanup_age_days', 'timeline_limit')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator('lock_timeout')
    @classmethod
    def validate_lock_timeout(cls, v):
        if v <= 0:
            raise ValueError("lock_timeout must be positive")
        return v

    def validate_paths(self) -> None:
        """Check the workspace is usable. The storage directory is created on first use."""
        if not self.workspace_path.is_dir():
            raise InvalidWorkspaceError(
                f"Cannot access workspace directory: {self.workspace_path}. "
                "Please ensure the directory exists."
            )
        if not os.access(self.workspace_path, os.R_OK | os.W_OK):
            raise InvalidWorkspaceError(
                f"Cannot access workspace directory: {self.workspace_path}. "
                "Please ensure the directory has read/write permissions."
            )
        if self.exclusions_file is not None and not self.exclusions_file.is_file():
            raise ConfigurationError(f"Exclusions file not found: {self.exclusions_file}")
        if self.storage_path.exists() and not os.access(self.storage_path, os.W_OK):
            raise ConfigurationError(f"Storage directory is not writable: {self.storage_path}")


class CheckpointServerConfig(BaseModel):
    """Main server configuration."""
    app_name: str = "mcp-checkpoint"
    version: str = "0.1.0"
    debug: bool = False

    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    config_paths: List[Path] = Field(default_factory=list)

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True
    )

    @property
    def log_directory(self) -> Path:
        return self.logging.directory or (self.checkpoint.storage_path / "logs")


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._sources: List[ConfigSource] = []
        self._config: Optional[CheckpointServerConfig] = None
        self._environ = environ
        self._lock = asyncio.Lock()

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            if not source_type:
                source_type = self._detect_source_type(path)

            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    async def load(self) -> CheckpointServerConfig:
        """
        Load configuration from all sources.

        Sources are merged lowest priority first; environment variables win.
        """
        async with self._lock:
            merged_data: Dict[str, Any] = {}

            for source in self._sources:
                data = self._load_source(source)
                merged_data = self._deep_merge(merged_data, data)

            env_data = self._load_env_vars()
            merged_data = self._deep_merge(merged_data, env_data)

            try:
                self._config = CheckpointServerConfig(**merged_data)
            except ValidationError as e:
                errors = []
                for error in e.errors():
                    field = ".".join(str(x) for x in error["loc"])
                    errors.append(f"{field}: {error['msg']}")

                raise ConfigurationError(
                    f"Configuration validation failed: {'; '.join(errors)}"
                ) from e

            self._config.config_paths = [s.path for s in self._sources if s.path]
            logger.info(
                "configuration_loaded",
                sources=len(self._sources),
                workspace=str(self._config.checkpoint.workspace_path),
                storage=str(self._config.checkpoint.storage_path),
            )
            return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text(encoding="utf-8")

        try:
            if source.source_type == "json":
                data = json.loads(content)
            elif source.source_type == "yaml":
                data = yaml.safe_load(content) or {}
            elif source.source_type == "toml":
                data = toml.loads(content)
            else:
                raise ConfigurationError(f"Unknown source type: {source.source_type}")
        except (json.JSONDecodeError, yaml.YAMLError, toml.TomlDecodeError) as e:
            raise ConfigurationError(f"Failed to parse {source.path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {source.path}")
        return data

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        environ = os.environ if self._environ is None else self._environ
        result: Dict[str, Any] = {}

        for key, (section, field) in ENV_VARS.items():
            value = environ.get(key)
            if value is None or value == "":
                continue
            if field not in PATH_FIELDS:
                value = self._convert_value(value)
            if section is None:
                result[field] = value
            else:
                result.setdefault(section, {})[field] = value

        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_config(self) -> CheckpointServerConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


_config_loader: Optional[ConfigLoader] = None


def get_config_loader() -> ConfigLoader:
    """Get global configuration loader."""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
    return _config_loader


async def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    loader: Optional[ConfigLoader] = None,
) -> CheckpointServerConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge
        loader: Loader to populate (defaults to the global loader)

    Returns:
        Loaded configuration
    """
    loader = loader or get_config_loader()

    default_paths = [
        Path.home() / DEFAULT_STORAGE_DIR / "config.yaml",
        Path.home() / DEFAULT_STORAGE_DIR / "config.json",
        Path("./mcp-checkpoint.yaml"),
        Path("./mcp-checkpoint.json"),
    ]

    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    env_path = os.environ.get("CHECKPOINT_CONFIG")
    if env_path:
        loader.add_source(env_path, priority=15)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return await loader.load()


def get_config() -> CheckpointServerConfig:
    """Get current configuration."""
    return get_config_loader().get_config()


__all__ = [
    'CheckpointServerConfig',
    'CheckpointConfig',
    'LoggingConfig',
    'ConfigLoader',
    'get_config_loader',
    'load_config',
    'get_config',
    'DEFAULT_STORAGE_DIR',
]
