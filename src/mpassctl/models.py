"""Typed domain model for entities reported by ``multipass``."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class InstanceState(str, Enum):
    """Power state of an instance as reported by ``multipass``."""

    RUNNING = "Running"
    STOPPED = "Stopped"
    SUSPENDED = "Suspended"
    DELETED = "Deleted"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, raw: object) -> InstanceState:
        """Map a raw state string onto the enum, falling back to ``UNKNOWN``."""
        text = str(raw or "").strip().lower()
        for state in cls:
            if state.value.lower() == text:
                return state
        return cls.UNKNOWN


class ImageKind(str, Enum):
    """Whether a catalogue entry is a plain image or a blueprint."""

    IMAGE = "image"
    BLUEPRINT = "blueprint"


@dataclass(frozen=True, slots=True)
class Mount:
    """A host directory shared into an instance."""

    host_path: str
    instance_path: str
    read_only: bool = False

    @property
    def key(self) -> tuple[str, str]:
        """Return the identity used when diffing mount sets."""
        return (self.host_path, self.instance_path)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host_path": self.host_path,
            "instance_path": self.instance_path,
            "read_only": self.read_only,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Mount:
        """Build a mount from its serialised form."""
        return cls(
            host_path=str(data.get("host_path", "")),
            instance_path=str(data.get("instance_path", "")),
            read_only=bool(data.get("read_only", False)),
        )


@dataclass(frozen=True, slots=True)
class NetworkAttachment:
    """An extra network interface requested at launch."""

    name: str
    mode: str = ""
    mac: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "mode": self.mode, "mac": self.mac}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> NetworkAttachment:
        """Build an attachment from its serialised form."""
        return cls(
            name=str(data.get("name", "")),
            mode=str(data.get("mode") or ""),
            mac=str(data.get("mac") or ""),
        )


@dataclass(slots=True)
class Instance:
    """Full snapshot of an instance; every read replaces the previous one."""

    name: str
    state: InstanceState = InstanceState.UNKNOWN
    release: str = ""
    image_release: str = ""
    image_hash: str = ""
    cpu_count: int = 0
    memory_total: int = 0
    memory_used: int = 0
    disk_total: int = 0
    disk_used: int = 0
    load: list[float] = field(default_factory=list)
    snapshot_count: int = 0
    ipv4: list[str] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)
    last_updated: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "state": self.state.value,
            "release": self.release,
            "image_release": self.image_release,
            "image_hash": self.image_hash,
            "cpu_count": self.cpu_count,
            "memory_total": self.memory_total,
            "memory_used": self.memory_used,
            "disk_total": self.disk_total,
            "disk_used": self.disk_used,
            "load": list(self.load),
            "snapshot_count": self.snapshot_count,
            "ipv4": list(self.ipv4),
            "mounts": [mount.to_dict() for mount in self.mounts],
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass(slots=True)
class Image:
    """A launchable image or blueprint from ``multipass find``."""

    name: str
    kind: ImageKind = ImageKind.IMAGE
    aliases: list[str] = field(default_factory=list)
    os: str = ""
    release: str = ""
    remote: str = ""
    version: str = ""
    description: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "aliases": list(self.aliases),
            "os": self.os,
            "release": self.release,
            "remote": self.remote,
            "version": self.version,
            "description": self.description,
        }


@dataclass(slots=True)
class Network:
    """A host network interface usable for bridged attachments."""

    name: str
    type: str = ""
    description: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {"name": self.name, "type": self.type, "description": self.description}


@dataclass(slots=True)
class Alias:
    """A host-side shortcut that runs a command inside an instance."""

    name: str
    instance: str
    command: str
    working_directory: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "instance": self.instance,
            "command": self.command,
            "working_directory": self.working_directory,
        }


@dataclass(slots=True)
class Snapshot:
    """A point-in-time snapshot, identified by ``(instance, name)``."""

    instance: str
    name: str
    comment: str = ""
    parent: str = ""

    @property
    def qualified_name(self) -> str:
        """Return the ``instance.snapshot`` form ``multipass`` expects."""
        return f"{self.instance}.{self.name}"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "instance": self.instance,
            "name": self.name,
            "comment": self.comment,
            "parent": self.parent,
        }


@dataclass(slots=True)
class LaunchOptions:
    """Arguments for ``multipass launch``."""

    name: str
    image: str = ""
    cpus: int = 0
    memory: str = ""
    disk: str = ""
    cloud_init_file: str = ""
    cloud_init: str = ""
    networks: list[NetworkAttachment] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)


@dataclass(slots=True)
class TransferOptions:
    """Arguments for ``multipass transfer``.

    Remote locations use the ``instance:path`` form, local ones are plain
    paths.
    """

    sources: list[str]
    destination: str
    recursive: bool = False
    parents: bool = False


__all__ = [
    "Alias",
    "Image",
    "ImageKind",
    "Instance",
    "InstanceState",
    "LaunchOptions",
    "Mount",
    "Network",
    "NetworkAttachment",
    "Snapshot",
    "TransferOptions",
]
