"""Reconcile declared instances against ``multipass``."""
from __future__ import annotations

import copy
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from ..models import Instance, InstanceState, LaunchOptions, Mount, NetworkAttachment
from ..multipass import MultipassError, NotFoundError, ValidationError
from .base import Diagnostics, ReconcileContext, ResourceHandler
from .coerce import as_int, as_mappings, as_str, as_strings

LOGGER = logging.getLogger(__name__)

DEFAULT_CPUS = 1
DEFAULT_MEMORY = "1G"
DEFAULT_DISK = "5G"
FALLBACK_IMAGE = "lts"
SIZE_PATTERN = re.compile(r"^[0-9]+(K|M|G|T)$")


@dataclass(slots=True)
class InstanceSpec:
    """Declared configuration for one instance."""

    name: str
    image: str = ""
    cpus: int = DEFAULT_CPUS
    memory: str = DEFAULT_MEMORY
    disk: str = DEFAULT_DISK
    cloud_init: str = ""
    cloud_init_file: str = ""
    primary: bool = False
    auto_recover: bool = False
    auto_start_on_recover: bool = False
    networks: list[NetworkAttachment] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "image": self.image,
            "cpus": self.cpus,
            "memory": self.memory,
            "disk": self.disk,
            "cloud_init": self.cloud_init,
            "cloud_init_file": self.cloud_init_file,
            "primary": self.primary,
            "auto_recover": self.auto_recover,
            "auto_start_on_recover": self.auto_start_on_recover,
            "networks": [network.to_dict() for network in self.networks],
            "mounts": [mount.to_dict() for mount in self.mounts],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> InstanceSpec:
        """Build a spec from its serialised form.

        Absent sizing keys take their defaults; keys present with an empty
        value stay empty (unknown).
        """
        return cls(
            name=as_str(data.get("name")),
            image=as_str(data.get("image")),
            cpus=as_int(data.get("cpus", DEFAULT_CPUS)),
            memory=as_str(data.get("memory", DEFAULT_MEMORY)),
            disk=as_str(data.get("disk", DEFAULT_DISK)),
            cloud_init=as_str(data.get("cloud_init")),
            cloud_init_file=as_str(data.get("cloud_init_file")),
            primary=bool(data.get("primary", False)),
            auto_recover=bool(data.get("auto_recover", False)),
            auto_start_on_recover=bool(data.get("auto_start_on_recover", False)),
            networks=[
                NetworkAttachment.from_dict(item) for item in as_mappings(data.get("networks"))
            ],
            mounts=[Mount.from_dict(item) for item in as_mappings(data.get("mounts"))],
        )


@dataclass(slots=True)
class InstanceRecord:
    """Tracked state of a managed instance.

    ``spec`` holds the configuration last applied, with the image resolved.
    Empty string attributes in ``spec`` are unknown (e.g. after an import)
    and are not compared when planning.
    """

    spec: InstanceSpec
    state: str = InstanceState.UNKNOWN.value
    ipv4: list[str] = field(default_factory=list)
    release: str = ""
    image_release: str = ""
    snapshot_count: int = 0
    last_updated: str = ""

    @property
    def id(self) -> str:
        """Return the instance name."""
        return self.spec.name

    def observe(self, instance: Instance) -> None:
        """Overwrite computed attributes from a fresh read."""
        self.state = instance.state.value
        self.ipv4 = list(instance.ipv4)
        self.release = instance.release
        self.image_release = instance.image_release
        self.snapshot_count = instance.snapshot_count
        self.last_updated = instance.last_updated.isoformat()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "spec": self.spec.to_dict(),
            "state": self.state,
            "ipv4": list(self.ipv4),
            "release": self.release,
            "image_release": self.image_release,
            "snapshot_count": self.snapshot_count,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> InstanceRecord:
        """Build a record from its serialised form."""
        spec = data.get("spec")
        return cls(
            spec=InstanceSpec.from_dict(spec if isinstance(spec, Mapping) else {}),
            state=as_str(data.get("state"), InstanceState.UNKNOWN.value),
            ipv4=as_strings(data.get("ipv4")),
            release=as_str(data.get("release")),
            image_release=as_str(data.get("image_release")),
            snapshot_count=as_int(data.get("snapshot_count")),
            last_updated=as_str(data.get("last_updated")),
        )


@dataclass(slots=True)
class MountDiff:
    """Mounts to remove and add to move from the current to the desired set."""

    to_add: list[Mount] = field(default_factory=list)
    to_remove: list[Mount] = field(default_factory=list)

    def __bool__(self) -> bool:
        """Return ``True`` when anything changed."""
        return bool(self.to_add or self.to_remove)


def diff_mounts(desired: Sequence[Mount], current: Sequence[Mount]) -> MountDiff:
    """Compare mount sets by ``(host_path, instance_path)``.

    A pair whose read-only flag changed appears in both lists.
    """
    desired_map = {mount.key: mount for mount in desired if all(mount.key)}
    current_map = {mount.key: mount for mount in current if all(mount.key)}
    diff = MountDiff()
    for key, existing in current_map.items():
        wanted = desired_map.get(key)
        if wanted is None:
            diff.to_remove.append(existing)
        elif wanted.read_only != existing.read_only:
            diff.to_remove.append(existing)
            diff.to_add.append(wanted)
    for key, wanted in desired_map.items():
        if key not in current_map:
            diff.to_add.append(wanted)
    return diff


def resolve_image(image: str, default_image: str = "") -> str:
    """Return the explicit image, else the configured default, else ``lts``."""
    return image or default_image or FALLBACK_IMAGE


class InstanceHandler(ResourceHandler[InstanceSpec, InstanceRecord]):
    """Lifecycle of ``multipass`` instances."""

    kind = "instance"

    def spec_id(self, spec: InstanceSpec) -> str:
        """Return the instance name."""
        return spec.name

    def record_id(self, record: InstanceRecord) -> str:
        """Return the instance name."""
        return record.id

    def validate(self, spec: InstanceSpec) -> None:
        """Reject specs that ``multipass launch`` would refuse."""
        if not spec.name:
            raise ValidationError("instance name is required")
        if spec.cloud_init and spec.cloud_init_file:
            raise ValidationError(
                "Conflicting cloud-init configuration: only one of cloud_init or "
                "cloud_init_file can be set"
            )
        if spec.cpus < 1:
            raise ValidationError(f"cpus must be at least 1, got {spec.cpus}")
        for label, value in (("memory", spec.memory), ("disk", spec.disk)):
            if value and not SIZE_PATTERN.match(value):
                raise ValidationError(
                    f"{label} must be a number followed by K, M, G or T, got {value!r}"
                )
        for network in spec.networks:
            if not network.name:
                raise ValidationError("network attachments require a name")
        for mount in spec.mounts:
            if not mount.host_path or not mount.instance_path:
                raise ValidationError("mounts require both host_path and instance_path")

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def replace_reasons(self, spec: InstanceSpec, record: InstanceRecord) -> list[str]:
        """Return immutable attributes that differ from the tracked record."""
        applied = record.spec
        reasons: list[str] = []
        if spec.name != applied.name:
            reasons.append("name")
        if spec.image and applied.image and spec.image != applied.image:
            reasons.append("image")
        if applied.cpus and spec.cpus != applied.cpus:
            reasons.append("cpus")
        for attribute in ("memory", "disk"):
            recorded = getattr(applied, attribute)
            if recorded and getattr(spec, attribute) != recorded:
                reasons.append(attribute)
        if spec.cloud_init != applied.cloud_init:
            reasons.append("cloud_init")
        if spec.cloud_init_file != applied.cloud_init_file:
            reasons.append("cloud_init_file")
        if list(spec.networks) != list(applied.networks):
            reasons.append("networks")
        return reasons

    def update_reasons(self, spec: InstanceSpec, record: InstanceRecord) -> list[str]:
        """Return attributes that can change without recreating the instance."""
        applied = record.spec
        reasons: list[str] = []
        if spec.primary != applied.primary:
            reasons.append("primary")
        if diff_mounts(spec.mounts, applied.mounts):
            reasons.append("mounts")
        if spec.auto_recover != applied.auto_recover:
            reasons.append("auto_recover")
        if spec.auto_start_on_recover != applied.auto_start_on_recover:
            reasons.append("auto_start_on_recover")
        return reasons

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create(
        self,
        ctx: ReconcileContext,
        spec: InstanceSpec,
        diags: Diagnostics,
    ) -> InstanceRecord:
        """Launch the instance, optionally make it primary, then read it back."""
        image = resolve_image(spec.image, ctx.default_image)
        options = LaunchOptions(
            name=spec.name,
            image=image,
            cpus=spec.cpus or DEFAULT_CPUS,
            memory=spec.memory or DEFAULT_MEMORY,
            disk=spec.disk or DEFAULT_DISK,
            cloud_init_file=spec.cloud_init_file,
            cloud_init=spec.cloud_init,
            networks=[network for network in spec.networks if network.name],
            mounts=[mount for mount in spec.mounts if all(mount.key)],
        )
        LOGGER.info("Launching instance %s from %s", spec.name, image)
        ctx.client.launch_instance(options)

        if spec.primary:
            try:
                ctx.client.set_primary(spec.name)
            except MultipassError as exc:
                diags.warn("Failed to set primary", str(exc))

        applied = copy.deepcopy(spec)
        applied.image = image
        applied.cpus = options.cpus
        applied.memory = options.memory
        applied.disk = options.disk
        record = InstanceRecord(spec=applied)
        record.observe(ctx.client.get_instance(spec.name))
        return record

    def read(
        self,
        ctx: ReconcileContext,
        record: InstanceRecord,
        diags: Diagnostics,
    ) -> InstanceRecord | None:
        """Refresh the record, recovering soft-deleted instances when asked to."""
        name = record.id
        client = ctx.client
        auto_recover = record.spec.auto_recover

        try:
            instance = client.get_instance(name)
        except NotFoundError:
            if not auto_recover:
                LOGGER.info("Instance %s no longer exists", name)
                return None
            try:
                client.recover_instance(name)
            except MultipassError as exc:
                diags.warn("Failed to auto-recover instance", str(exc))
                return None
            try:
                instance = client.get_instance(name)
            except NotFoundError:
                LOGGER.info("Instance %s still missing after recover", name)
                return None
            instance = self._start_after_recover(ctx, record, instance, diags)
        else:
            if auto_recover and instance.state is InstanceState.DELETED:
                try:
                    client.recover_instance(name)
                except MultipassError as exc:
                    diags.warn("Failed to auto-recover soft-deleted instance", str(exc))
                else:
                    instance = client.get_instance(name)
                    instance = self._start_after_recover(ctx, record, instance, diags)

        refreshed = copy.deepcopy(record)
        refreshed.observe(instance)
        return refreshed

    def update(
        self,
        ctx: ReconcileContext,
        spec: InstanceSpec,
        record: InstanceRecord,
        diags: Diagnostics,
    ) -> InstanceRecord:
        """Apply primary and mount changes in place."""
        name = record.id
        applied = record.spec

        if spec.primary and not applied.primary:
            ctx.client.set_primary(name)

        if diff_mounts(spec.mounts, applied.mounts):
            LOGGER.info("Remounting %d path(s) on %s", len(spec.mounts), name)
            ctx.client.unmount(name)
            for mount in spec.mounts:
                ctx.client.mount(name, mount)

        updated_spec = copy.deepcopy(spec)
        updated_spec.image = applied.image or spec.image
        updated = InstanceRecord(spec=updated_spec)
        updated.observe(ctx.client.get_instance(name))
        return updated

    def delete(self, ctx: ReconcileContext, record: InstanceRecord, diags: Diagnostics) -> None:
        """Delete and purge the instance; an already missing instance is fine."""
        try:
            ctx.client.delete_instance(record.id, purge=True)
        except NotFoundError:
            LOGGER.info("Instance %s already gone", record.id)

    def import_record(self, ctx: ReconcileContext, import_id: str) -> InstanceRecord | None:
        """Start tracking an existing instance by name."""
        if not import_id:
            raise ValidationError("Expected an instance name to import.")
        instance = ctx.client.get_instance(import_id)
        spec = InstanceSpec(
            name=import_id,
            image="",
            cpus=instance.cpu_count,
            memory="",
            disk="",
            mounts=list(instance.mounts),
        )
        record = InstanceRecord(spec=spec)
        record.observe(instance)
        return record

    def _start_after_recover(
        self,
        ctx: ReconcileContext,
        record: InstanceRecord,
        instance: Instance,
        diags: Diagnostics,
    ) -> Instance:
        if not record.spec.auto_start_on_recover or instance.state is InstanceState.RUNNING:
            return instance
        try:
            ctx.client.start_instance(record.id)
        except MultipassError as exc:
            diags.warn("Failed to auto-start instance after recover", str(exc))
            return instance
        return ctx.client.get_instance(record.id)


__all__ = [
    "DEFAULT_CPUS",
    "DEFAULT_DISK",
    "DEFAULT_MEMORY",
    "InstanceHandler",
    "InstanceRecord",
    "InstanceSpec",
    "MountDiff",
    "diff_mounts",
    "resolve_image",
]
