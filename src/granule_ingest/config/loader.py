"""
Configuration file loading.

Loads ``granule-ingest.yaml`` and overlays ``granule-ingest.<env>.yaml`` when
an environment is given.
"""

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml

from granule_ingest.config.resolver import resolve_config
from granule_ingest.exceptions import ConfigurationError

DEFAULT_CONFIG_NAME = "granule-ingest.yaml"


class Config:
    """Configuration container with dict-like access."""

    def __init__(self, data: dict[str, Any]):
        self.data = data

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation, e.g. ``locking.enabled``."""
        value = self.data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default
        return value

    def section(self, key: str) -> dict[str, Any]:
        """A nested mapping, or an empty dict when absent."""
        value = self.get(key, {})
        if not isinstance(value, dict):
            raise ConfigurationError(f"Configuration '{key}' must be a mapping, got {type(value).__name__}")
        return value

    def __getitem__(self, key: str) -> Any:
        if "." in key:
            return self.get(key)
        if key in self.data:
            value = self.data[key]
            if isinstance(value, dict):
                return Config(value)
            return value
        raise KeyError(f"Config key '{key}' not found")

    def __contains__(self, key: str) -> bool:
        value = self.data
        for k in key.split("."):
            if not isinstance(value, dict) or k not in value:
                return False
            value = value[k]
        return True

    def __iter__(self) -> Iterator[str]:
        return iter(self.data)

    def items(self):
        return self.data.items()


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        where = f" at line {mark.line + 1}, column {mark.column + 1}" if mark is not None else ""
        raise ConfigurationError(
            f"Error parsing {path.name}{where}: {e}", details={"file": str(path)}
        ) from e
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration must be a mapping, got {type(data).__name__}", details={"file": str(path)}
        )
    return data


def load_config(config_path: Path | None = None, env: str | None = None) -> Config:
    """
    Load configuration.

    Args:
        config_path: Config file (default: ``granule-ingest.yaml`` in the
            current directory, which may be absent)
        env: Environment name; ``granule-ingest.<env>.yaml`` next to the base
            file overrides it key by key

    Raises:
        ConfigurationError: the file cannot be parsed
        FileNotFoundError: an explicitly given file does not exist
    """
    explicit = config_path is not None
    config_path = Path(config_path) if explicit else Path.cwd() / DEFAULT_CONFIG_NAME

    config_data: dict[str, Any] = {}
    if config_path.is_file():
        config_data = _read_yaml(config_path)
    elif explicit:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    if env:
        env_path = config_path.with_name(f"{config_path.stem}.{env}{config_path.suffix}")
        if env_path.is_file():
            _merge_dict(config_data, _read_yaml(env_path))

    return Config(resolve_config(config_data, env or "dev"))


def _merge_dict(base: dict, override: dict):
    """Recursively merge override into base."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _merge_dict(base[key], value)
        else:
            base[key] = value
