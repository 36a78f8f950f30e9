"""Tests for content fingerprints."""
from __future__ import annotations

import contextlib
import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from mpassctl.multipass import ValidationError
from mpassctl.reconcile import hashing
from mpassctl.reconcile.hashing import hash_bytes, hash_directory, hash_file, hash_path


def _tree(root: Path) -> Path:
    (root / "sub").mkdir(parents=True)
    (root / "a.txt").write_text("alpha", encoding="utf-8")
    (root / "sub" / "b.txt").write_text("beta", encoding="utf-8")
    return root


def test_file_and_bytes_agree(tmp_path: Path) -> None:
    """Hashing a file matches hashing its bytes."""
    path = tmp_path / "data.bin"
    path.write_bytes(b"payload")

    assert hash_file(path) == hash_bytes(b"payload")
    assert hash_path(path, recursive=False) == hash_bytes(b"payload")


def test_directory_hash_is_stable(tmp_path: Path) -> None:
    """Identical trees hash identically regardless of creation order."""
    first = _tree(tmp_path / "one")
    second = tmp_path / "two"
    (second / "sub").mkdir(parents=True)
    (second / "sub" / "b.txt").write_text("beta", encoding="utf-8")
    (second / "a.txt").write_text("alpha", encoding="utf-8")

    assert hash_directory(first) == hash_directory(second)


def test_directory_hash_ignores_enumeration_order(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The digest does not depend on the order the filesystem lists entries."""
    root = _tree(tmp_path / "tree")
    (root / "sub" / "c.txt").write_text("gamma", encoding="utf-8")
    (root / "z.txt").write_text("zeta", encoding="utf-8")
    expected = hash_directory(root)
    real_scandir = os.scandir

    @contextlib.contextmanager
    def reversed_scandir(path: str | os.PathLike[str]) -> Iterator[Iterator[os.DirEntry[str]]]:
        with real_scandir(path) as iterator:
            entries = sorted(iterator, key=lambda entry: entry.name, reverse=True)
        yield iter(entries)

    monkeypatch.setattr(hashing.os, "scandir", reversed_scandir)

    assert hash_directory(root) == expected


def test_directory_hash_tracks_edits_and_renames(tmp_path: Path) -> None:
    """Content edits and renames both change the digest."""
    root = _tree(tmp_path / "tree")
    original = hash_directory(root)

    (root / "a.txt").write_text("ALPHA", encoding="utf-8")
    edited = hash_directory(root)
    (root / "a.txt").rename(root / "c.txt")
    renamed = hash_directory(root)

    assert len({original, edited, renamed}) == 3


def test_directory_requires_recursive(tmp_path: Path) -> None:
    """Hashing a directory without ``recursive`` is rejected."""
    root = _tree(tmp_path / "tree")

    with pytest.raises(ValidationError, match="recursive"):
        hash_path(root, recursive=False)
    assert hash_path(root, recursive=True) == hash_directory(root)


def test_directory_hash_distinguishes_entry_boundaries(tmp_path: Path) -> None:
    """An empty directory plus a file differs from one file with the joined name."""
    split = tmp_path / "split"
    (split / "a").mkdir(parents=True)
    (split / "b").write_text("payload", encoding="utf-8")
    joined = tmp_path / "joined"
    joined.mkdir()
    (joined / "ab").write_text("payload", encoding="utf-8")

    assert hash_directory(split) != hash_directory(joined)


def test_directory_hash_distinguishes_empty_directory_from_empty_file(tmp_path: Path) -> None:
    """Replacing an empty directory with an empty file changes the digest."""
    with_dir = tmp_path / "with_dir"
    (with_dir / "entry").mkdir(parents=True)
    with_file = tmp_path / "with_file"
    with_file.mkdir()
    (with_file / "entry").write_bytes(b"")

    assert hash_directory(with_dir) != hash_directory(with_file)
