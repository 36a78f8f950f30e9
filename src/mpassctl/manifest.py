"""Load the desired-state manifest.

A manifest is a YAML mapping with optional top-level lists::

    instances:
      - name: web
        image: jammy
        mounts:
          - host_path: ~/src
            instance_path: /srv/src
    snapshots:
      - instance: web
        name: baseline
    aliases: []
    file_uploads: []
    file_downloads: []

Each entry maps onto the matching spec dataclass. Unknown keys are rejected
so that typos fail loudly instead of being ignored.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .models import Mount, NetworkAttachment
from .reconcile import (
    AliasSpec,
    FileDownloadSpec,
    FileUploadSpec,
    InstanceSpec,
    SnapshotSpec,
)


class ManifestError(RuntimeError):
    """Raised when a manifest cannot be loaded."""


SPEC_TYPES: dict[str, type] = {
    "instances": InstanceSpec,
    "snapshots": SnapshotSpec,
    "aliases": AliasSpec,
    "file_uploads": FileUploadSpec,
    "file_downloads": FileDownloadSpec,
}
REQUIRED_KEYS: dict[str, tuple[str, ...]] = {
    "instances": ("name",),
    "snapshots": ("instance",),
    "aliases": ("name", "instance", "command"),
    "file_uploads": ("instance", "destination"),
    "file_downloads": ("instance", "source", "destination"),
}
NESTED_TYPES: dict[str, type] = {"mounts": Mount, "networks": NetworkAttachment}


@dataclass(slots=True)
class Manifest:
    """Desired resources grouped by kind."""

    instances: list[InstanceSpec] = field(default_factory=list)
    snapshots: list[SnapshotSpec] = field(default_factory=list)
    aliases: list[AliasSpec] = field(default_factory=list)
    file_uploads: list[FileUploadSpec] = field(default_factory=list)
    file_downloads: list[FileDownloadSpec] = field(default_factory=list)

    def specs(self, kind: str) -> list[object]:
        """Return the declared specs for *kind*."""
        return list(getattr(self, kind))


def load_manifest(path: Path) -> Manifest:
    """Read and validate the manifest at *path*."""
    path = path.expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(f"Unable to read manifest {path}: {exc}") from exc
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ManifestError(f"Failed to parse manifest {path}: {exc}") from exc
    return parse_manifest(raw if raw is not None else {}, source=str(path))


def parse_manifest(raw: object, *, source: str = "manifest") -> Manifest:
    """Build a :class:`Manifest` from already-decoded YAML."""
    if not isinstance(raw, Mapping):
        raise ManifestError(f"{source} must contain a mapping at the top level.")
    unknown = set(raw.keys()) - set(SPEC_TYPES)
    if unknown:
        joined = ", ".join(sorted(str(key) for key in unknown))
        raise ManifestError(f"Unknown manifest keys: {joined}.")

    manifest = Manifest()
    for kind, spec_type in SPEC_TYPES.items():
        entries = raw.get(kind)
        if entries is None:
            continue
        if not isinstance(entries, list):
            raise ManifestError(f"Manifest key '{kind}' must be a list.")
        target = getattr(manifest, kind)
        for index, entry in enumerate(entries):
            label = f"{kind}[{index}]"
            _check_entry(kind, spec_type, entry, label)
            target.append(spec_type.from_dict(entry))
    return manifest


def _check_entry(kind: str, spec_type: type, entry: object, label: str) -> None:
    if not isinstance(entry, Mapping):
        raise ManifestError(f"Manifest entry {label} must be a mapping.")
    _check_keys(entry, {item.name for item in fields(spec_type)}, label)
    missing = [key for key in REQUIRED_KEYS[kind] if not entry.get(key)]
    if missing:
        raise ManifestError(f"Manifest entry {label} is missing: {', '.join(missing)}.")
    for key, nested_type in NESTED_TYPES.items():
        if key not in entry or entry[key] is None:
            continue
        items = entry[key]
        if not isinstance(items, list):
            raise ManifestError(f"Manifest entry {label}.{key} must be a list.")
        allowed = {item.name for item in fields(nested_type)}
        for position, item in enumerate(items):
            nested_label = f"{label}.{key}[{position}]"
            if not isinstance(item, Mapping):
                raise ManifestError(f"Manifest entry {nested_label} must be a mapping.")
            _check_keys(item, allowed, nested_label)
    triggers = entry.get("triggers")
    if triggers is not None and not isinstance(triggers, Mapping):
        raise ManifestError(f"Manifest entry {label}.triggers must be a mapping.")


def _check_keys(entry: Mapping[object, object], allowed: set[str], label: str) -> None:
    unknown = {str(key) for key in entry} - allowed
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ManifestError(f"Unknown keys in manifest entry {label}: {joined}.")


__all__ = ["Manifest", "ManifestError", "load_manifest", "parse_manifest"]
