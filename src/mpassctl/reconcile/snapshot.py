"""Reconcile declared instance snapshots."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from ..models import InstanceState
from ..multipass import NotFoundError, ValidationError
from .base import Diagnostics, ReconcileContext, ResourceHandler
from .coerce import as_str

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SnapshotSpec:
    """Declared snapshot. An empty ``name`` lets ``multipass`` pick one."""

    instance: str
    name: str = ""
    comment: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"instance": self.instance, "name": self.name, "comment": self.comment}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SnapshotSpec:
        """Build a spec from its serialised form."""
        return cls(
            instance=as_str(data.get("instance")),
            name=as_str(data.get("name")),
            comment=as_str(data.get("comment")),
        )


@dataclass(slots=True)
class SnapshotRecord:
    """Tracked snapshot."""

    instance: str
    name: str
    comment: str = ""
    parent: str = ""

    @property
    def id(self) -> str:
        """Return ``instance.snapshot``."""
        return f"{self.instance}.{self.name}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "instance": self.instance,
            "name": self.name,
            "comment": self.comment,
            "parent": self.parent,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SnapshotRecord:
        """Build a record from its serialised form."""
        return cls(
            instance=as_str(data.get("instance")),
            name=as_str(data.get("name")),
            comment=as_str(data.get("comment")),
            parent=as_str(data.get("parent")),
        )


def split_snapshot_id(import_id: str) -> tuple[str, str]:
    """Split ``instance.snapshot`` into its parts."""
    instance, dot, name = import_id.partition(".")
    if not dot or not instance or not name:
        raise ValidationError("Invalid import ID: expected <instance>.<snapshot>.")
    return instance, name


class SnapshotHandler(ResourceHandler[SnapshotSpec, SnapshotRecord]):
    """Lifecycle of ``multipass`` snapshots.

    Snapshots have no in-place attributes: any change recreates them.
    """

    kind = "snapshot"

    def spec_id(self, spec: SnapshotSpec) -> str:
        """Return ``instance.snapshot`` (the name may still be unassigned)."""
        return f"{spec.instance}.{spec.name}"

    def record_id(self, record: SnapshotRecord) -> str:
        """Return ``instance.snapshot``."""
        return record.id

    def validate(self, spec: SnapshotSpec) -> None:
        """Require the owning instance."""
        if not spec.instance:
            raise ValidationError("instance name is required for snapshots")

    def replace_reasons(self, spec: SnapshotSpec, record: SnapshotRecord) -> list[str]:
        """Return attributes that differ from the tracked snapshot."""
        reasons: list[str] = []
        if spec.instance != record.instance:
            reasons.append("instance")
        if spec.name and spec.name != record.name:
            reasons.append("name")
        if spec.comment != record.comment:
            reasons.append("comment")
        return reasons

    def update_reasons(self, spec: SnapshotSpec, record: SnapshotRecord) -> list[str]:
        """Snapshots have nothing to update in place."""
        return []

    def create(
        self,
        ctx: ReconcileContext,
        spec: SnapshotSpec,
        diags: Diagnostics,
    ) -> SnapshotRecord:
        """Take the snapshot once the instance is confirmed stopped."""
        instance = ctx.client.get_instance(spec.instance)
        if instance.state is not InstanceState.STOPPED:
            raise ValidationError(
                f"instance {spec.instance!r} must be stopped before taking a snapshot "
                f"(current state: {instance.state.value})"
            )
        name = ctx.client.create_snapshot(spec.instance, spec.name, spec.comment) or spec.name
        LOGGER.info("Snapshot %s.%s taken", spec.instance, name)
        return SnapshotRecord(instance=spec.instance, name=name, comment=spec.comment)

    def read(
        self,
        ctx: ReconcileContext,
        record: SnapshotRecord,
        diags: Diagnostics,
    ) -> SnapshotRecord | None:
        """Return the refreshed snapshot or ``None`` when it has disappeared."""
        for snapshot in ctx.client.list_snapshots(record.instance):
            if snapshot.name == record.name:
                return SnapshotRecord(
                    instance=record.instance,
                    name=record.name,
                    comment=snapshot.comment,
                    parent=snapshot.parent,
                )
        LOGGER.info("Snapshot %s no longer exists", record.id)
        return None

    def update(
        self,
        ctx: ReconcileContext,
        spec: SnapshotSpec,
        record: SnapshotRecord,
        diags: Diagnostics,
    ) -> SnapshotRecord:
        """Return *record* unchanged; every change is a replacement."""
        return record

    def delete(self, ctx: ReconcileContext, record: SnapshotRecord, diags: Diagnostics) -> None:
        """Delete and purge the snapshot; an already missing snapshot is fine."""
        try:
            ctx.client.delete_snapshot(record.instance, record.name, purge=True)
        except NotFoundError:
            LOGGER.info("Snapshot %s already gone", record.id)

    def import_record(self, ctx: ReconcileContext, import_id: str) -> SnapshotRecord | None:
        """Start tracking an existing snapshot given as ``instance.snapshot``."""
        instance, name = split_snapshot_id(import_id)
        return self.read(ctx, SnapshotRecord(instance=instance, name=name), Diagnostics())


__all__ = ["SnapshotHandler", "SnapshotRecord", "SnapshotSpec", "split_snapshot_id"]
