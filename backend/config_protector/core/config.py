"""Daemon configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

from config_protector.guard.truncation import DEFAULT_RULES, TruncationRule

ENV_PREFIX = "CCP_"
DEFAULT_CONFIG_PATH = Path("~/.config/config-protector/config.yaml")

MIB = 1024 * 1024

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("target", "path"): "target_path",
    ("backups", "dir"): "backup_dir",
    ("backups", "max_count"): "max_backups",
    ("backups", "periodic_seconds"): "periodic_backup_seconds",
    ("limits", "max_size_bytes"): "max_size_bytes",
    ("watch", "check_interval"): "check_interval",
    ("watch", "debounce_seconds"): "debounce_seconds",
    ("watch", "throttle_seconds"): "throttle_seconds",
    ("logging", "debug"): "debug",
    ("logging", "max_bytes"): "log_max_bytes",
    ("logging", "json"): "log_json",
    ("metrics", "port"): "metrics_port",
    ("truncation", "rules"): "truncation_rules",
}

# Fields that cannot be expressed as a single environment string.
_ENV_EXCLUDED = frozenset({"truncation_rules"})


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    target_path: Path = Field(default=Path.home() / ".claude.json")
    backup_dir: Path = Field(default=Path.home() / ".claude-backups")
    max_backups: int = Field(default=10, gt=0)
    periodic_backup_seconds: float = Field(default=3600.0, gt=0)
    max_size_bytes: int = Field(default=5 * MIB, gt=0)
    check_interval: float = Field(default=5.0, gt=0)
    debounce_seconds: float = Field(default=1.0, ge=0)
    throttle_seconds: float = Field(default=1.0, ge=0)
    debug: bool = False
    log_max_bytes: int = Field(default=10 * MIB, gt=0)
    log_json: bool = False
    metrics_port: int | None = None
    truncation_rules: list[TruncationRule] = Field(default_factory=lambda: list(DEFAULT_RULES))

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("target_path", "backup_dir", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("path settings must be a path or string")

    @property
    def log_path(self) -> Path:
        return self.backup_dir / "protector.log"

    @property
    def pid_path(self) -> Path:
        return self.backup_dir / "protector.pid"

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        mapped_key = _YAML_KEY_MAP.get(next_prefix)
        if mapped_key:
            flat[mapped_key] = value
        elif isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        elif key in Settings.model_fields:
            flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with CCP_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields and field_name not in _ENV_EXCLUDED:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings", "MIB"]
