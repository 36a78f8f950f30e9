"""SHA-256 fingerprints for transferred payloads."""
from __future__ import annotations

import hashlib
import os
from pathlib import Path

from ..multipass import ValidationError

CHUNK_SIZE = 1024 * 1024


def hash_bytes(data: bytes) -> str:
    """Return the hex SHA-256 digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def hash_file(path: Path) -> str:
    """Return the hex SHA-256 digest of the file at *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def hash_directory(root: Path) -> str:
    """Return a digest over every entry below *root*.

    Entries are visited in name order at each level. Each contributes a
    NUL-framed record: a type marker (``D`` or ``F``), its POSIX path relative
    to *root* and, for files, the file digest. Renames and content edits both
    change the result.
    """
    digest = hashlib.sha256()
    _walk(root, root, digest)
    return digest.hexdigest()


def hash_path(path: Path, *, recursive: bool) -> str:
    """Hash a file, or a directory when *recursive* is set."""
    resolved = Path(path).expanduser().absolute()
    if resolved.is_dir():
        if not recursive:
            raise ValidationError(f"path {str(path)!r} is a directory; set recursive: true")
        return hash_directory(resolved)
    return hash_file(resolved)


def _walk(root: Path, current: Path, digest: hashlib._Hash) -> None:
    with os.scandir(current) as iterator:
        entries = sorted(iterator, key=lambda entry: entry.name)
    for entry in entries:
        path = Path(entry.path)
        relative = path.relative_to(root).as_posix().encode("utf-8")
        if entry.is_dir(follow_symlinks=False):
            digest.update(b"D\0" + relative + b"\0")
            _walk(root, path, digest)
            continue
        digest.update(b"F\0" + relative + b"\0" + hash_file(path).encode("ascii") + b"\0")


__all__ = ["hash_bytes", "hash_directory", "hash_file", "hash_path"]
