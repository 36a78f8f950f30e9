"""Translate ``multipass --format json`` payloads into domain objects.

Each query shape has its own parser. Parsers are pure: they never invoke the
binary and they raise :class:`MalformedOutputError` when the payload does not
have the structure the query is documented to return.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime

from ..models import Alias, Image, ImageKind, Instance, InstanceState, Mount, Network, Snapshot
from .errors import MalformedOutputError, MissingEntityError

IPV4_PLACEHOLDER = "n/a"
# Only the first blueprint collection present is read.
BLUEPRINT_KEYS: tuple[str, ...] = ("blueprints (deprecated)", "blueprints")


# ----------------------------------------------------------------------
# Scalar helpers
# ----------------------------------------------------------------------
def lenient_int(value: object) -> int:
    """Return *value* as an integer, or ``0`` when it cannot be read as one.

    ``multipass`` reports several counters as strings and leaves them empty
    for stopped instances.
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def sanitize_ipv4(values: Iterable[object] | None) -> list[str]:
    """Drop empty and ``N/A`` entries, preserving the order of the rest."""
    result: list[str] = []
    for value in values or ():
        text = str(value).strip()
        if not text or text.lower() == IPV4_PLACEHOLDER:
            continue
        result.append(text)
    return result


def parse_snapshot_name(output: str, requested: str = "") -> str:
    """Extract the snapshot name from ``Snapshot taken: <instance>.<name>``.

    Falls back to *requested* when the trailer is empty or has no dotted
    component.
    """
    line = output.strip()
    if not line:
        return requested
    last = line.rsplit(":", 1)[-1].strip()
    if not last:
        return requested
    _, dot, name = last.partition(".")
    if dot and name:
        return name
    return requested


# ----------------------------------------------------------------------
# Payload parsers
# ----------------------------------------------------------------------
def parse_version(payload: object) -> str:
    """Return the client version from ``multipass version``."""
    data = _mapping(payload, "version")
    version = data.get("multipass")
    if not isinstance(version, str) or not version.strip():
        raise MalformedOutputError("version payload does not contain a 'multipass' entry")
    return version.strip()


def parse_instance_list(payload: object) -> list[Instance]:
    """Return the summary records from ``multipass list``."""
    data = _mapping(payload, "list")
    now = datetime.now(UTC)
    instances: list[Instance] = []
    for index, raw in enumerate(_sequence(data.get("list"), "list")):
        entry = _mapping(raw, f"list[{index}]")
        instances.append(
            Instance(
                name=_text(entry.get("name")),
                state=InstanceState.parse(entry.get("state")),
                release=_text(entry.get("release")),
                ipv4=sanitize_ipv4(_sequence(entry.get("ipv4"), f"list[{index}].ipv4")),
                last_updated=now,
            )
        )
    return instances


def parse_instance_info(payload: object, name: str) -> Instance:
    """Return the detailed record for *name* from ``multipass info``."""
    data = _mapping(payload, "info")
    info = _mapping(data.get("info"), "info.info")
    if name not in info:
        raise MissingEntityError(name)
    entry = _mapping(info[name], f"info.{name}")

    disk_total = disk_used = 0
    disks = _mapping(entry.get("disks"), f"info.{name}.disks")
    if disks:
        first = _mapping(disks[sorted(disks)[0]], f"info.{name}.disks")
        disk_total = lenient_int(first.get("total"))
        disk_used = lenient_int(first.get("used"))

    memory = _mapping(entry.get("memory"), f"info.{name}.memory")

    mounts: list[Mount] = []
    for target, raw_mount in _mapping(entry.get("mounts"), f"info.{name}.mounts").items():
        mount = _mapping(raw_mount, f"info.{name}.mounts.{target}")
        mounts.append(
            Mount(
                host_path=_text(mount.get("source_path")),
                instance_path=target,
                read_only=bool(mount.get("readonly", False)),
            )
        )
    mounts.sort(key=lambda item: item.instance_path)

    load: list[float] = []
    for sample in _sequence(entry.get("load"), f"info.{name}.load"):
        try:
            load.append(float(sample))
        except (TypeError, ValueError) as exc:
            raise MalformedOutputError(f"info.{name}.load contains {sample!r}") from exc

    return Instance(
        name=name,
        state=InstanceState.parse(entry.get("state")),
        release=_text(entry.get("release")),
        image_release=_text(entry.get("image_release")),
        image_hash=_text(entry.get("image_hash")),
        cpu_count=lenient_int(entry.get("cpu_count")),
        memory_total=lenient_int(memory.get("total")),
        memory_used=lenient_int(memory.get("used")),
        disk_total=disk_total,
        disk_used=disk_used,
        load=load,
        snapshot_count=lenient_int(entry.get("snapshot_count")),
        ipv4=sanitize_ipv4(_sequence(entry.get("ipv4"), f"info.{name}.ipv4")),
        mounts=mounts,
        last_updated=datetime.now(UTC),
    )


def parse_images(payload: object) -> list[Image]:
    """Return images and blueprints from ``multipass find`` sorted by name."""
    data = _mapping(payload, "find")
    images: list[Image] = []
    for key, kind in _image_collections(data):
        for name, raw in _mapping(data.get(key), f"find.{key}").items():
            entry = _mapping(raw, f"find.{key}.{name}")
            release = _text(entry.get("release"))
            images.append(
                Image(
                    name=name,
                    kind=kind,
                    aliases=[
                        _text(alias)
                        for alias in _sequence(entry.get("aliases"), f"find.{key}.{name}.aliases")
                    ],
                    os=_text(entry.get("os")),
                    release=release,
                    remote=_text(entry.get("remote")),
                    version=_text(entry.get("version")),
                    description=release,
                )
            )
    images.sort(key=lambda image: image.name)
    return images


def _image_collections(data: Mapping[str, object]) -> list[tuple[str, ImageKind]]:
    collections = [("images", ImageKind.IMAGE)]
    for key in BLUEPRINT_KEYS:
        if key in data:
            collections.append((key, ImageKind.BLUEPRINT))
            break
    return collections


def parse_networks(payload: object) -> list[Network]:
    """Return host networks from ``multipass networks``."""
    data = _mapping(payload, "networks")
    networks: list[Network] = []
    for index, raw in enumerate(_sequence(data.get("list"), "networks.list")):
        entry = _mapping(raw, f"networks.list[{index}]")
        networks.append(
            Network(
                name=_text(entry.get("name")),
                type=_text(entry.get("type")),
                description=_text(entry.get("description")),
            )
        )
    return networks


def parse_aliases(payload: object) -> list[Alias]:
    """Flatten the per-context alias map from ``multipass aliases``."""
    data = _mapping(payload, "aliases")
    aliases: list[Alias] = []
    for context, raw_context in _mapping(data.get("contexts"), "aliases.contexts").items():
        entries = _mapping(raw_context, f"aliases.contexts.{context}")
        for name, raw in entries.items():
            entry = _mapping(raw, f"aliases.contexts.{context}.{name}")
            aliases.append(
                Alias(
                    name=name,
                    instance=_text(entry.get("instance")),
                    command=_text(entry.get("command")),
                    working_directory=_text(entry.get("working-directory")),
                )
            )
    aliases.sort(key=lambda alias: alias.name)
    return aliases


def parse_snapshots(payload: object, instance: str | None = None) -> list[Snapshot]:
    """Return snapshots from ``multipass list --snapshots``.

    When *instance* is given only that instance's snapshots are returned.
    """
    data = _mapping(payload, "snapshots")
    snapshots: list[Snapshot] = []
    for owner, raw_owner in _mapping(data.get("info"), "snapshots.info").items():
        if instance and owner != instance:
            continue
        for name, raw in _mapping(raw_owner, f"snapshots.info.{owner}").items():
            entry = _mapping(raw, f"snapshots.info.{owner}.{name}")
            snapshots.append(
                Snapshot(
                    instance=owner,
                    name=name,
                    comment=_text(entry.get("comment")),
                    parent=_text(entry.get("parent")),
                )
            )
    snapshots.sort(key=lambda snapshot: (snapshot.instance, snapshot.name))
    return snapshots


# ----------------------------------------------------------------------
# Structural helpers
# ----------------------------------------------------------------------
def _mapping(value: object, label: str) -> Mapping[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise MalformedOutputError(
            f"expected {label} to be an object, got {type(value).__name__}"
        )
    return value


def _sequence(value: object, label: str) -> Sequence[object]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise MalformedOutputError(
            f"expected {label} to be an array, got {type(value).__name__}"
        )
    return value


def _text(value: object) -> str:
    return "" if value is None else str(value)


__all__ = [
    "lenient_int",
    "parse_aliases",
    "parse_images",
    "parse_instance_info",
    "parse_instance_list",
    "parse_networks",
    "parse_snapshot_name",
    "parse_snapshots",
    "parse_version",
    "sanitize_ipv4",
]
