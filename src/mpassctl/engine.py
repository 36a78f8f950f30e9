"""Drive every resource handler against a manifest and the tracked state.

Tracked state is the ``resources`` mapping kept by
:class:`~mpassctl.state.StateRegistry`: records (as plain dicts) grouped by
kind and keyed by the identity their spec was declared under.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any

from .manifest import Manifest, ManifestError
from .reconcile import (
    AliasHandler,
    AliasSpec,
    Diagnostics,
    FileDownloadHandler,
    FileDownloadRecord,
    FileUploadHandler,
    FileUploadRecord,
    InstanceHandler,
    InstanceRecord,
    PlannedChange,
    ReconcileContext,
    ResourceHandler,
    SnapshotHandler,
    SnapshotRecord,
    Transition,
)

LOGGER = logging.getLogger(__name__)

Resources = MutableMapping[str, dict[str, dict[str, Any]]]


@dataclass(frozen=True)
class ResourceType:
    """Binding between a registry kind and its handler."""

    kind: str
    handler: ResourceHandler[Any, Any]
    load_record: Callable[[Mapping[str, object]], Any]


# Creation order; removals walk this list backwards.
RESOURCE_TYPES: tuple[ResourceType, ...] = (
    ResourceType("instances", InstanceHandler(), InstanceRecord.from_dict),
    ResourceType("snapshots", SnapshotHandler(), SnapshotRecord.from_dict),
    ResourceType("aliases", AliasHandler(), AliasSpec.from_dict),
    ResourceType("file_uploads", FileUploadHandler(), FileUploadRecord.from_dict),
    ResourceType("file_downloads", FileDownloadHandler(), FileDownloadRecord.from_dict),
)


def resource_type(kind: str) -> ResourceType:
    """Return the binding for *kind*."""
    for item in RESOURCE_TYPES:
        if item.kind == kind:
            return item
    raise KeyError(kind)


@dataclass(frozen=True)
class PlanEntry:
    """One planned change."""

    kind: str
    key: str
    change: PlannedChange
    spec: Any | None
    record: Any | None

    @property
    def transition(self) -> Transition:
        """Return the planned transition."""
        return self.change.transition

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind,
            "key": self.key,
            "action": self.change.transition.value,
            "reasons": list(self.change.reasons),
        }


@dataclass(frozen=True)
class ApplySummary:
    """Outcome of :func:`apply_plan`."""

    diagnostics: Diagnostics
    changed: int
    failed: int


def empty_resources() -> dict[str, dict[str, dict[str, Any]]]:
    """Return a tracked-state mapping with every kind present."""
    return {item.kind: {} for item in RESOURCE_TYPES}


def refresh_resources(ctx: ReconcileContext, resources: Resources) -> Diagnostics:
    """Re-read every tracked record in place, dropping those that are gone."""
    diags = Diagnostics()
    for item in RESOURCE_TYPES:
        entries = resources.setdefault(item.kind, {})
        for key in list(entries):
            result = item.handler.refresh(ctx, item.load_record(entries[key]))
            diags.extend(result.diagnostics)
            if result.record is None:
                LOGGER.info("No longer tracking %s %s", item.kind, key)
                del entries[key]
            else:
                entries[key] = result.record.to_dict()
    return diags


def build_plan(
    manifest: Manifest,
    resources: Mapping[str, Mapping[str, Mapping[str, Any]]],
) -> list[PlanEntry]:
    """Return removals (reverse order) followed by creates and updates.

    NOOP entries are included so callers can show a complete plan.
    """
    removals: list[PlanEntry] = []
    changes: list[PlanEntry] = []
    for item in RESOURCE_TYPES:
        tracked = resources.get(item.kind, {})
        declared: dict[str, Any] = {}
        for spec in manifest.specs(item.kind):
            key = item.handler.spec_id(spec)
            if key in declared:
                raise ManifestError(f"Duplicate {item.handler.kind} '{key}' in manifest")
            declared[key] = spec
        for key, spec in declared.items():
            raw = tracked.get(key)
            record = item.load_record(raw) if raw is not None else None
            changes.append(PlanEntry(item.kind, key, item.handler.plan(spec, record), spec, record))
        stale = [
            PlanEntry(
                item.kind,
                key,
                PlannedChange(Transition.DELETE),
                None,
                item.load_record(tracked[key]),
            )
            for key in sorted(tracked)
            if key not in declared
        ]
        removals = stale + removals
    return removals + changes


def apply_plan(
    ctx: ReconcileContext,
    plan: list[PlanEntry],
    resources: Resources,
    *,
    persist: Callable[[Resources], None] | None = None,
) -> ApplySummary:
    """Carry out *plan*, updating *resources* (and persisting) after each entry."""
    diags = Diagnostics()
    changed = 0
    failed = 0
    for entry in plan:
        if entry.transition is Transition.NOOP:
            continue
        handler = resource_type(entry.kind).handler
        LOGGER.info("%s %s %s", entry.transition.value, handler.kind, entry.key)
        result = handler.apply(ctx, entry.change, entry.spec, entry.record)
        diags.extend(result.diagnostics)
        entries = resources.setdefault(entry.kind, {})
        if result.record is None:
            entries.pop(entry.key, None)
        else:
            entries[entry.key] = result.record.to_dict()
        if result.diagnostics.has_errors:
            failed += 1
        else:
            changed += 1
        if persist is not None:
            persist(resources)
    return ApplySummary(diagnostics=diags, changed=changed, failed=failed)


__all__ = [
    "RESOURCE_TYPES",
    "ApplySummary",
    "PlanEntry",
    "ResourceType",
    "apply_plan",
    "build_plan",
    "empty_resources",
    "refresh_resources",
    "resource_type",
]
