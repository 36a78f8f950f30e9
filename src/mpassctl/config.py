"""Configuration loader for mpassctl.

Configuration values are read from several sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/mpassctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MPASSCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MPASSCTL_COMMAND_TIMEOUT=300
    export MPASSCTL_DOWNLOAD__STRATEGY=archive

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
import sys
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml
from packaging.version import InvalidVersion, Version

ENV_PREFIX = "MPASSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DownloadConfig:
    """How files are pulled back out of instances."""

    strategy: str = "auto"

    def effective_strategy(self, platform: str | None = None) -> str:
        """Resolve ``auto`` into ``archive`` on Windows hosts and ``direct`` elsewhere."""
        if self.strategy != "auto":
            return self.strategy
        current = sys.platform if platform is None else platform
        return "archive" if current.startswith("win") else "direct"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"strategy": self.strategy}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for mpassctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    multipass_path: str
    command_timeout: float
    cache_ttl: float
    default_image: str
    min_version: str
    download: DownloadConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "multipass_path": self.multipass_path,
            "command_timeout": self.command_timeout,
            "cache_ttl": self.cache_ttl,
            "default_image": self.default_image,
            "min_version": self.min_version,
            "download": self.download.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/mpassctl/config.yml",
    "state_dir": "~/.local/state/mpassctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": None,  # derived from state_dir when absent
    "multipass_path": "multipass",
    "command_timeout": 120.0,
    "cache_ttl": 3.0,
    "default_image": "",
    "min_version": "1.13.0",
    "download": {
        "strategy": "auto",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_DOWNLOAD_STRATEGIES = {"auto", "direct", "archive"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for key, default in (("command_timeout", 120.0), ("cache_ttl", 3.0)):
        value = raw.get(key)
        if value is not None:
            _expect_positive_float(value, key, default=default)

    min_version = raw.get("min_version")
    if min_version is not None:
        try:
            Version(str(min_version))
        except InvalidVersion as exc:
            raise ConfigError(f"min_version is not a valid version: {min_version!r}.") from exc

    download = raw.get("download")
    if download is not None:
        download_map = _as_dict(download, "download")
        unknown = set(download_map.keys()) - {"strategy"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown download configuration keys: {joined}.")
        strategy = download_map.get("strategy")
        if strategy is not None and str(strategy) not in ALLOWED_DOWNLOAD_STRATEGIES:
            allowed = ", ".join(sorted(ALLOWED_DOWNLOAD_STRATEGIES))
            raise ConfigError(
                f"Unsupported download strategy '{strategy}'. Allowed: {allowed}."
            )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"
    logs_dir_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_dir_value) if logs_dir_value else state_dir / "logs"

    multipass_path = str(raw.get("multipass_path") or "multipass").strip()
    if not multipass_path:
        raise ConfigError("multipass_path must be a non-empty string.")

    default_image = raw.get("default_image")
    download_mapping = _as_dict(raw.get("download"), "download")

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        multipass_path=multipass_path,
        command_timeout=_expect_positive_float(
            raw.get("command_timeout"), "command_timeout", default=120.0
        ),
        cache_ttl=_expect_positive_float(raw.get("cache_ttl"), "cache_ttl", default=3.0),
        default_image="" if default_image is None else str(default_image).strip(),
        min_version=str(raw.get("min_version", "1.13.0")),
        download=DownloadConfig(strategy=str(download_mapping.get("strategy", "auto"))),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DownloadConfig",
    "load_config",
]
