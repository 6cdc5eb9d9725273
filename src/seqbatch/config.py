# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Configuration loading for seqbatch.

Lookup order for the config file:
1. --config option
2. $SEQBATCH_CONFIG
3. ~/.seqbatch/config.yaml (optional; built-in defaults when absent)

Environment overrides applied on top of the file:
- SEQBATCH_BASE_PATH
- SEQBATCH_HEARTBEAT_SEC
- SEQBATCH_SHOW_STDERR
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from seqbatch.errors import ConfigError

DEFAULT_CONFIG_PATH = Path("~/.seqbatch/config.yaml")
DEFAULT_BASE_PATH = "/data"
MIN_HEARTBEAT_SEC = 10

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


def config_path(explicit: Optional[str] = None) -> Path:
    """Resolve which config file to read."""
    if explicit:
        return Path(explicit).expanduser()
    env_path = os.environ.get("SEQBATCH_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Read the raw YAML mapping.

    Args:
        path: Explicit config file. Missing explicit files are an error;
            a missing default file yields an empty mapping.

    Raises:
        ConfigError: If the file is missing (when explicit) or not a mapping.
    """
    explicit = bool(path or os.environ.get("SEQBATCH_CONFIG"))
    resolved = config_path(path)

    if not resolved.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {resolved}")
        return {}

    try:
        with open(resolved) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {resolved}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {resolved} must contain a YAML mapping")
    return data


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ConfigError(f"{key} must be true or false, got {value!r}")


def _as_int(value: Any, key: str, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    if number < minimum:
        raise ConfigError(f"{key} must be at least {minimum}, got {number}")
    return number


@dataclass(frozen=True)
class Settings:
    """Validated configuration."""

    base_path: Path = Path(DEFAULT_BASE_PATH)
    parallel_batches: int = 1
    heartbeat_sec: int = 60
    show_stderr: bool = False
    scratch_dir: Optional[Path] = None
    stages: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    source: Optional[Path] = None

    def stage_options(self, name: str) -> Dict[str, Any]:
        """Per-stage options from the config file (copy)."""
        return dict(self.stages.get(name, {}))

    def resolve_study(self, study: str) -> Path:
        """A study is a path, or a directory name under base_path."""
        path = Path(study).expanduser()
        if path.is_absolute() or path.exists():
            return path
        return self.base_path / study


def settings_from_mapping(
    data: Mapping[str, Any],
    environ: Optional[Mapping[str, str]] = None,
    source: Optional[Path] = None,
) -> Settings:
    """Validate a raw mapping (plus environment overrides) into Settings."""
    environ = os.environ if environ is None else environ
    data = dict(data)

    if "SEQBATCH_BASE_PATH" in environ:
        data["base_path"] = environ["SEQBATCH_BASE_PATH"]
    if "SEQBATCH_HEARTBEAT_SEC" in environ:
        data["heartbeat_sec"] = environ["SEQBATCH_HEARTBEAT_SEC"]
    if "SEQBATCH_SHOW_STDERR" in environ:
        data["show_stderr"] = environ["SEQBATCH_SHOW_STDERR"]

    unknown = set(data) - {
        "base_path",
        "parallel_batches",
        "heartbeat_sec",
        "show_stderr",
        "scratch_dir",
        "stages",
    }
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    stages = data.get("stages") or {}
    if not isinstance(stages, dict) or not all(isinstance(v, dict) for v in stages.values()):
        raise ConfigError("stages must map stage names to option mappings")

    scratch = data.get("scratch_dir")
    return Settings(
        base_path=Path(str(data.get("base_path", DEFAULT_BASE_PATH))).expanduser(),
        parallel_batches=_as_int(data.get("parallel_batches", 1), "parallel_batches", 1),
        heartbeat_sec=max(
            MIN_HEARTBEAT_SEC, _as_int(data.get("heartbeat_sec", 60), "heartbeat_sec", 1)
        ),
        show_stderr=_as_bool(data.get("show_stderr", False), "show_stderr"),
        scratch_dir=Path(str(scratch)).expanduser() if scratch else None,
        stages=stages,
        source=source,
    )


def load_settings(path: Optional[str] = None) -> Settings:
    """Load, override and validate configuration.

    Raises:
        ConfigError: If the file or any value is invalid.
    """
    data = load_config(path)
    resolved = config_path(path)
    return settings_from_mapping(data, source=resolved if resolved.exists() else None)
