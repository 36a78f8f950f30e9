"""Safe extraction of tar streams pulled out of an instance."""
from __future__ import annotations

import io
import posixpath
import shutil
import tarfile
from pathlib import Path

from ..multipass import MalformedOutputError


class UnsafeArchiveError(MalformedOutputError):
    """Raised when an archive entry would land outside the destination."""


def safe_member_path(destination: Path, name: str) -> Path:
    """Return where *name* extracts to below *destination*.

    Absolute names, names with a ``..`` component and names that resolve
    outside *destination* are rejected.
    """
    normalized = posixpath.normpath(name.replace("\\", "/"))
    if normalized.startswith("/") or normalized == "..":
        raise UnsafeArchiveError(f"archive entry {name!r} escapes destination")
    if ".." in normalized.split("/"):
        raise UnsafeArchiveError(f"archive entry {name!r} contains parent directory traversal")
    root = destination.resolve()
    target = (root / normalized).resolve()
    if target != root and root not in target.parents:
        raise UnsafeArchiveError(f"archive entry {name!r} escapes destination")
    return target


def _relative_name(name: str, root: str) -> str:
    if not root:
        return name
    normalized = posixpath.normpath(name.replace("\\", "/"))
    if normalized == root:
        return "."
    prefix = root + "/"
    if not normalized.startswith(prefix):
        raise UnsafeArchiveError(f"archive entry {name!r} is outside {root!r}")
    return normalized[len(prefix):]


def plan_extraction(
    data: bytes,
    destination: Path,
    *,
    root: str = "",
) -> list[tuple[tarfile.TarInfo, Path]]:
    """Validate every member of the tar stream *data* without writing anything.

    When *root* is given every member must live below that top-level
    directory, and the directory itself maps onto *destination*.
    """
    members: list[tuple[tarfile.TarInfo, Path]] = []
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
            for member in archive.getmembers():
                target = safe_member_path(destination, _relative_name(member.name, root))
                if not (member.isdir() or member.isfile()):
                    raise UnsafeArchiveError(
                        f"archive entry {member.name!r} has unsupported type {member.type!r}"
                    )
                members.append((member, target))
    except tarfile.TarError as exc:
        raise MalformedOutputError(f"failed to read archive: {exc}") from exc
    return members


def extract_archive(
    data: bytes,
    destination: Path,
    *,
    root: str = "",
    overwrite: bool = True,
    create_parents: bool = True,
) -> None:
    """Extract the tar stream *data* into *destination*.

    All members are validated before the destination is touched.
    """
    members = plan_extraction(data, destination, root=root)

    if destination.exists():
        if not destination.is_dir():
            raise FileExistsError(f"{destination} exists and is not a directory")
        if not overwrite:
            raise FileExistsError(f"directory {destination} already exists and overwrite=false")
        shutil.rmtree(destination)
    ensure_parent(destination, create=create_parents)
    destination.mkdir(exist_ok=True)

    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
        for member, target in members:
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            source = archive.extractfile(member)
            if source is None:  # pragma: no cover - regular files always have data
                raise MalformedOutputError(f"archive entry {member.name!r} has no data")
            with source, target.open("wb") as handle:
                shutil.copyfileobj(source, handle)


def ensure_parent(path: Path, *, create: bool) -> None:
    """Make sure the parent of *path* exists, creating it when allowed."""
    parent = path.parent
    if create:
        parent.mkdir(parents=True, exist_ok=True)
        return
    if not parent.exists():
        raise FileNotFoundError(
            f"parent directory {parent} does not exist (set create_parents: true to create it)"
        )


__all__ = [
    "UnsafeArchiveError",
    "ensure_parent",
    "extract_archive",
    "plan_extraction",
    "safe_member_path",
]
