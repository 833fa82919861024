"""Configuration management for matrixci."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import yaml


GLOBAL_CONFIG_PATH = Path.home() / ".matrixci.yaml"

KNOWN_KEYS = ("max_workers", "step_timeout", "job_timeout", "fail_fast", "show_output", "db_path", "log_level")


class Config:
    """Manages matrixci configuration with hierarchical lookup.

    Config hierarchy (higher priority first):
    1. Local repo config (.matrixci/config)
    2. Global config (~/.matrixci.yaml)

    When reading, local values override global.
    When writing, writes to the config path specified at init.
    """

    def __init__(self, config_path: Optional[Path] = None, enable_hierarchy: bool = True):
        """Initialize config.

        Args:
            config_path: Specific config file to use. If None, uses global config.
            enable_hierarchy: If True, falls back to the global config for
                             keys missing from config_path.
        """
        self.config_path = config_path or GLOBAL_CONFIG_PATH
        self.enable_hierarchy = enable_hierarchy
        self._data: dict[str, Any] = {}
        self._global_data: dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from file(s)."""
        self._data = self._read(self.config_path)
        if self.enable_hierarchy and self.config_path != GLOBAL_CONFIG_PATH:
            self._global_data = self._read(GLOBAL_CONFIG_PATH)
        else:
            self._global_data = {}

    @staticmethod
    def _read(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise RuntimeError(f"Failed to load config from {path}: {e}") from e
        if not isinstance(data, dict):
            raise RuntimeError(f"Config file {path} must contain a mapping")
        return data

    def save(self) -> None:
        """Save configuration to primary config file."""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                yaml.dump(self._data, f, default_flow_style=False)
        except OSError as e:
            raise RuntimeError(f"Failed to save config to {self.config_path}: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value, checking local config first, then global."""
        if key in self._data:
            return self._data[key]
        if key in self._global_data:
            return self._global_data[key]
        return default

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def as_dict(self) -> dict[str, Any]:
        merged = dict(self._global_data)
        merged.update(self._data)
        return merged

    @property
    def max_workers(self) -> Optional[int]:
        """Worker pool size; None means one worker per job instance."""
        value = self.get("max_workers")
        return int(value) if value is not None else None

    @property
    def step_timeout(self) -> Optional[float]:
        """Default per-step timeout in seconds."""
        value = self.get("step_timeout")
        return float(value) if value is not None else None

    @property
    def job_timeout(self) -> Optional[float]:
        """Per-instance timeout in seconds."""
        value = self.get("job_timeout")
        return float(value) if value is not None else None

    @property
    def fail_fast(self) -> bool:
        """Cancel sibling instances when one fails."""
        return _as_bool(self.get("fail_fast", False))

    @property
    def show_output(self) -> bool:
        return _as_bool(self.get("show_output", False))

    @property
    def db_path(self) -> Optional[str]:
        return self.get("db_path")

    @property
    def log_level(self) -> str:
        return str(self.get("log_level", "WARNING"))

    @classmethod
    def load_with_repo_context(cls, start_path: Optional[Path] = None) -> Config:
        """Load config with repo context if available.

        Uses the repo-local config with global fallback inside a repo, and the
        global config alone outside one.
        """
        from .paths import get_repo_config_path

        repo_config_path = get_repo_config_path(start_path)
        if repo_config_path:
            return cls(config_path=repo_config_path, enable_hierarchy=True)
        return cls(config_path=GLOBAL_CONFIG_PATH, enable_hierarchy=False)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
