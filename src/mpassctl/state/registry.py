"""Helpers for interacting with the mpassctl state registry.

The registry directory (``~/.local/state/mpassctl/registry`` by default)
stores ``resources.yml``: every resource mpassctl manages, grouped by kind and
keyed by the identity it was declared under in the manifest. Writes go
through a temporary file and ``os.replace`` so an interrupted run never
leaves a half-written registry behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

RESOURCES_FILE = "resources.yml"
RESOURCE_KINDS = ("instances", "snapshots", "aliases", "file_uploads", "file_downloads")


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Resource helpers -------------------------------------------------
    def read_resources(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Return tracked records grouped by kind (every kind present, maybe empty)."""
        raw = self.read(RESOURCES_FILE, default={})
        if not isinstance(raw, Mapping):
            raise StateRegistryError(f"{self.path_for(RESOURCES_FILE)} must contain a mapping.")
        section = raw.get("resources", {}) or {}
        if not isinstance(section, Mapping):
            raise StateRegistryError("Registry key 'resources' must be a mapping.")

        resources: dict[str, dict[str, dict[str, Any]]] = {kind: {} for kind in RESOURCE_KINDS}
        for kind, entries in section.items():
            if kind not in resources:
                raise StateRegistryError(f"Unknown resource kind '{kind}' in registry.")
            if entries is None:
                continue
            if not isinstance(entries, Mapping):
                raise StateRegistryError(f"Registry entries for '{kind}' must be a mapping.")
            for key, record in entries.items():
                if not isinstance(record, Mapping):
                    raise StateRegistryError(
                        f"Registry entry '{kind}/{key}' must be a mapping."
                    )
                resources[kind][str(key)] = dict(record)
        return resources

    def write_resources(self, resources: Mapping[str, Mapping[str, Mapping[str, Any]]]) -> None:
        """Persist every tracked record to ``resources.yml``."""
        payload: dict[str, dict[str, dict[str, Any]]] = {}
        for kind in RESOURCE_KINDS:
            entries = resources.get(kind, {})
            payload[kind] = {key: dict(entries[key]) for key in sorted(entries)}
        self.write(RESOURCES_FILE, {"resources": payload})

    def get_resource(self, kind: str, key: str) -> dict[str, Any] | None:
        """Return the tracked record for *key* if present."""
        _check_kind(kind)
        record = self.read_resources()[kind].get(key)
        return deepcopy(record) if record is not None else None

    def upsert_resource(self, kind: str, key: str, record: Mapping[str, Any]) -> None:
        """Add or replace the tracked record for *key*."""
        _check_kind(kind)
        if not key:
            raise StateRegistryError("Resource key must be a non-empty string.")
        resources = self.read_resources()
        resources[kind][key] = dict(record)
        self.write_resources(resources)

    def remove_resource(self, kind: str, key: str) -> None:
        """Stop tracking *key*."""
        _check_kind(kind)
        resources = self.read_resources()
        if key not in resources[kind]:
            raise StateRegistryError(f"Resource '{kind}/{key}' not found in registry")
        del resources[kind][key]
        self.write_resources(resources)


def _check_kind(kind: str) -> None:
    if kind not in RESOURCE_KINDS:
        raise StateRegistryError(
            f"Unknown resource kind '{kind}'. Expected one of: {', '.join(RESOURCE_KINDS)}."
        )


__all__ = ["RESOURCES_FILE", "RESOURCE_KINDS", "StateRegistry", "StateRegistryError"]
