"""Configuration management for prootbox."""

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

# Debug aid: keep the ephemeral directory after the run
NO_CLEANUP_ENV = "PROOT_NO_CLEANUP"
CONFIG_DIR_ENV = "PROOTBOX_CONFIG_DIR"


class LauncherConfig(BaseModel):
    """Sandbox launcher configuration."""

    grace_seconds: float = Field(default=5.0, gt=0)
    temp_prefix: str = "rootfs"
    tmp_dir: Optional[Path] = None
    keep_workdir: bool = False
    tool_storage: Literal["memfd", "tempfile"] = "memfd"

    @field_validator("temp_prefix")
    @classmethod
    def validate_prefix(cls, prefix: str) -> str:
        """Reject prefixes that would place the directory elsewhere."""
        if os.sep in prefix or (os.altsep and os.altsep in prefix):
            raise ValueError("temp_prefix must not contain path separators")
        return prefix


class AssetsConfig(BaseModel):
    """Overrides for the packaged rootfs archive and sandbox tool."""

    rootfs_archive: Optional[Path] = None
    sandbox_tool: Optional[Path] = None


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"

    @field_validator("level")
    @classmethod
    def validate_level(cls, level: str) -> str:
        """Normalize and check the level name."""
        level = level.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {level}")
        return level


class ProotboxConfig(BaseModel):
    """Main prootbox configuration."""

    launcher: LauncherConfig = Field(default_factory=LauncherConfig)
    assets: AssetsConfig = Field(default_factory=AssetsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def get_config_dir() -> Path:
    """Get the prootbox configuration directory."""
    return Path(os.environ.get(CONFIG_DIR_ENV, Path.home() / ".prootbox"))


def get_config_path() -> Path:
    """Get the path to the configuration file."""
    return get_config_dir() / "config.yaml"


def cleanup_disabled() -> bool:
    """Check the environment for the no-cleanup debug override."""
    return os.environ.get(NO_CLEANUP_ENV) == "1"


def load_config(config_path: Optional[Path] = None) -> ProotboxConfig:
    """Load configuration from file, falling back to defaults.

    A missing file is not an error. ``PROOT_NO_CLEANUP=1`` in the
    environment forces ``launcher.keep_workdir``.
    """
    config_path = config_path or get_config_path()

    if config_path.exists():
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            config = ProotboxConfig(**data)
        except Exception as e:
            raise ValueError(f"Invalid configuration file {config_path}: {e}") from e
    else:
        config = ProotboxConfig()

    if cleanup_disabled():
        config.launcher.keep_workdir = True
    return config


# Global config instance
_config: ProotboxConfig | None = None


def get_config() -> ProotboxConfig:
    """Get the current configuration (loads if not already loaded)."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Optional[Path] = None) -> ProotboxConfig:
    """Reload configuration from file."""
    global _config
    _config = load_config(config_path)
    return _config
