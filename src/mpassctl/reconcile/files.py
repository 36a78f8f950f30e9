"""Reconcile file uploads into instances and downloads out of them.

Neither resource has a native identity in ``multipass``. Uploads are keyed
as ``instance:destination`` and downloads as ``instance:source->destination``.
Both track a SHA-256 ``content_hash`` of what was transferred.
"""
from __future__ import annotations

import hashlib
import logging
import os
import posixpath
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ..models import TransferOptions
from ..multipass import MultipassError, NotFoundError, ValidationError
from .archive import ensure_parent, extract_archive
from .base import Diagnostics, ReconcileContext, ResourceHandler
from .coerce import as_str, as_str_map
from .hashing import hash_bytes, hash_directory, hash_path

LOGGER = logging.getLogger(__name__)

REMOTE_TMP_DIR = "/tmp"
DOWNLOAD_FILE_MODE = 0o644
STRATEGY_DIRECT = "direct"
STRATEGY_ARCHIVE = "archive"


def _as_bool(value: object, default: bool) -> bool:
    return default if value is None else bool(value)


# ----------------------------------------------------------------------
# Uploads
# ----------------------------------------------------------------------
@dataclass(slots=True)
class FileUploadSpec:
    """Declared upload of a local path or inline content into an instance."""

    instance: str
    destination: str
    source: str = ""
    content: str = ""
    recursive: bool = False
    create_parents: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "instance": self.instance,
            "destination": self.destination,
            "source": self.source,
            "content": self.content,
            "recursive": self.recursive,
            "create_parents": self.create_parents,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FileUploadSpec:
        """Build a spec from its serialised form."""
        return cls(
            instance=as_str(data.get("instance")),
            destination=as_str(data.get("destination")),
            source=as_str(data.get("source")),
            content=as_str(data.get("content")),
            recursive=_as_bool(data.get("recursive"), False),
            create_parents=_as_bool(data.get("create_parents"), True),
        )


@dataclass(slots=True)
class FileUploadRecord:
    """Tracked upload."""

    spec: FileUploadSpec
    content_hash: str = ""

    @property
    def id(self) -> str:
        """Return ``instance:destination``."""
        return upload_id(self.spec)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"id": self.id, "spec": self.spec.to_dict(), "content_hash": self.content_hash}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FileUploadRecord:
        """Build a record from its serialised form."""
        spec = data.get("spec")
        return cls(
            spec=FileUploadSpec.from_dict(spec if isinstance(spec, Mapping) else {}),
            content_hash=as_str(data.get("content_hash")),
        )


def upload_id(spec: FileUploadSpec) -> str:
    """Return the synthetic identity of an upload."""
    return f"{spec.instance}:{spec.destination}"


def upload_hash(spec: FileUploadSpec) -> str:
    """Return the content hash of what *spec* would upload."""
    if spec.content:
        return hash_bytes(spec.content.encode("utf-8"))
    return hash_path(Path(spec.source).expanduser(), recursive=spec.recursive)


class FileUploadHandler(ResourceHandler[FileUploadSpec, FileUploadRecord]):
    """Copy local files (or inline content) into an instance."""

    kind = "file upload"

    def spec_id(self, spec: FileUploadSpec) -> str:
        """Return ``instance:destination``."""
        return upload_id(spec)

    def record_id(self, record: FileUploadRecord) -> str:
        """Return ``instance:destination``."""
        return record.id

    def validate(self, spec: FileUploadSpec) -> None:
        """Require a target and exactly one of ``source`` or ``content``."""
        if not spec.instance or not spec.destination:
            raise ValidationError("file upload requires instance and destination")
        if bool(spec.source) == bool(spec.content):
            raise ValidationError("exactly one of source or content must be set")
        if spec.content and spec.recursive:
            raise ValidationError("recursive applies only to source uploads")

    def replace_reasons(self, spec: FileUploadSpec, record: FileUploadRecord) -> list[str]:
        """A different target is a different upload."""
        return [
            attribute
            for attribute in ("instance", "destination")
            if getattr(spec, attribute) != getattr(record.spec, attribute)
        ]

    def update_reasons(self, spec: FileUploadSpec, record: FileUploadRecord) -> list[str]:
        """Return what warrants transferring again."""
        reasons = [
            attribute
            for attribute in ("source", "content", "recursive")
            if getattr(spec, attribute) != getattr(record.spec, attribute)
        ]
        try:
            desired = upload_hash(spec)
        except (MultipassError, OSError) as exc:
            LOGGER.debug("Cannot hash upload %s: %s", upload_id(spec), exc)
            desired = ""
        if not desired or desired != record.content_hash:
            reasons.append("content_hash")
        return reasons

    def create(
        self,
        ctx: ReconcileContext,
        spec: FileUploadSpec,
        diags: Diagnostics,
    ) -> FileUploadRecord:
        """Transfer the payload and record its hash."""
        remote = f"{spec.instance}:{spec.destination}"
        if spec.content:
            payload = spec.content.encode("utf-8")
            fd, tmp_name = tempfile.mkstemp(prefix="mpassctl-upload-")
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(payload)
                ctx.client.transfer(
                    TransferOptions(
                        sources=[str(tmp_path)],
                        destination=remote,
                        parents=spec.create_parents,
                    )
                )
            finally:
                tmp_path.unlink(missing_ok=True)
            content_hash = hash_bytes(payload)
        else:
            source = Path(spec.source).expanduser()
            content_hash = hash_path(source, recursive=spec.recursive)
            ctx.client.transfer(
                TransferOptions(
                    sources=[str(source)],
                    destination=remote,
                    recursive=spec.recursive,
                    parents=spec.create_parents,
                )
            )
        LOGGER.info("Uploaded %s", remote)
        return FileUploadRecord(
            spec=FileUploadSpec.from_dict(spec.to_dict()), content_hash=content_hash
        )

    def read(
        self,
        ctx: ReconcileContext,
        record: FileUploadRecord,
        diags: Diagnostics,
    ) -> FileUploadRecord | None:
        """Drop the upload when its instance no longer exists."""
        try:
            ctx.client.get_instance(record.spec.instance)
        except NotFoundError:
            LOGGER.info("Instance %s for upload %s is gone", record.spec.instance, record.id)
            return None
        return record

    def update(
        self,
        ctx: ReconcileContext,
        spec: FileUploadSpec,
        record: FileUploadRecord,
        diags: Diagnostics,
    ) -> FileUploadRecord:
        """Transfer again over the existing destination."""
        return self.create(ctx, spec, diags)

    def delete(self, ctx: ReconcileContext, record: FileUploadRecord, diags: Diagnostics) -> None:
        """Remove the uploaded path from the instance, best effort."""
        try:
            ctx.client.exec(record.spec.instance, ["rm", "-rf", "--", record.spec.destination])
        except NotFoundError:
            LOGGER.info("Instance %s already gone", record.spec.instance)
        except MultipassError as exc:
            diags.warn("Failed to remove uploaded file", str(exc))

    def import_record(self, ctx: ReconcileContext, import_id: str) -> FileUploadRecord | None:
        """Start tracking an existing upload given as ``instance:destination``."""
        instance, colon, destination = import_id.partition(":")
        if not colon or not instance or not destination:
            raise ValidationError("Invalid import ID: expected <instance>:<destination>.")
        record = FileUploadRecord(spec=FileUploadSpec(instance=instance, destination=destination))
        return self.read(ctx, record, Diagnostics())


# ----------------------------------------------------------------------
# Downloads
# ----------------------------------------------------------------------
@dataclass(slots=True)
class FileDownloadSpec:
    """Declared copy of a path inside an instance onto the host."""

    instance: str
    source: str
    destination: str
    recursive: bool = False
    create_parents: bool = True
    overwrite: bool = True
    triggers: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "instance": self.instance,
            "source": self.source,
            "destination": self.destination,
            "recursive": self.recursive,
            "create_parents": self.create_parents,
            "overwrite": self.overwrite,
            "triggers": dict(self.triggers),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FileDownloadSpec:
        """Build a spec from its serialised form."""
        return cls(
            instance=as_str(data.get("instance")),
            source=as_str(data.get("source")),
            destination=as_str(data.get("destination")),
            recursive=_as_bool(data.get("recursive"), False),
            create_parents=_as_bool(data.get("create_parents"), True),
            overwrite=_as_bool(data.get("overwrite"), True),
            triggers=as_str_map(data.get("triggers")),
        )


@dataclass(slots=True)
class FileDownloadRecord:
    """Tracked download. ``path`` is where the payload actually landed."""

    spec: FileDownloadSpec
    path: str = ""
    content_hash: str = ""

    @property
    def id(self) -> str:
        """Return ``instance:source->destination``."""
        return download_id(self.spec)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "spec": self.spec.to_dict(),
            "path": self.path,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FileDownloadRecord:
        """Build a record from its serialised form."""
        spec = data.get("spec")
        return cls(
            spec=FileDownloadSpec.from_dict(spec if isinstance(spec, Mapping) else {}),
            path=as_str(data.get("path")),
            content_hash=as_str(data.get("content_hash")),
        )


def download_id(spec: FileDownloadSpec) -> str:
    """Return the synthetic identity of a download."""
    return f"{spec.instance}:{spec.source}->{spec.destination}"


def remote_archive_path(instance: str, source: str) -> str:
    """Return the deterministic scratch tarball path used inside *instance*."""
    digest = hashlib.sha256(f"{instance}:{source}".encode()).hexdigest()[:12]
    return posixpath.join(REMOTE_TMP_DIR, f"mpassctl-download-{digest}.tar")


def write_file_bytes(
    destination: Path,
    data: bytes,
    *,
    source_name: str,
    overwrite: bool,
    create_parents: bool,
) -> Path:
    """Write *data* to *destination* and return the path written.

    A destination that is an existing directory receives the file under
    *source_name*.
    """
    target = destination / source_name if destination.is_dir() else destination
    if target.exists() and not overwrite:
        raise FileExistsError(f"file {target} already exists and overwrite=false")
    ensure_parent(target, create=create_parents)
    target.write_bytes(data)
    target.chmod(DOWNLOAD_FILE_MODE)
    return target


def _remove_local(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


class FileDownloadHandler(ResourceHandler[FileDownloadSpec, FileDownloadRecord]):
    """Copy files out of an instance onto the host.

    ``ReconcileContext.download_strategy`` chooses between a direct
    ``transfer`` into a staging directory and a tarball streamed through
    stdout (``archive``), which only changes recursive downloads.
    """

    kind = "file download"

    def spec_id(self, spec: FileDownloadSpec) -> str:
        """Return ``instance:source->destination``."""
        return download_id(spec)

    def record_id(self, record: FileDownloadRecord) -> str:
        """Return ``instance:source->destination``."""
        return record.id

    def validate(self, spec: FileDownloadSpec) -> None:
        """Require instance, source and destination."""
        if not spec.instance or not spec.source or not spec.destination:
            raise ValidationError("file download requires instance, source, and destination")

    def replace_reasons(self, spec: FileDownloadSpec, record: FileDownloadRecord) -> list[str]:
        """Any change to what is fetched, or to ``triggers``, downloads again."""
        return [
            attribute
            for attribute in ("instance", "source", "destination", "recursive", "triggers")
            if getattr(spec, attribute) != getattr(record.spec, attribute)
        ]

    def update_reasons(self, spec: FileDownloadSpec, record: FileDownloadRecord) -> list[str]:
        """Return write options that changed; they only matter for the next download."""
        return [
            attribute
            for attribute in ("create_parents", "overwrite")
            if getattr(spec, attribute) != getattr(record.spec, attribute)
        ]

    def create(
        self,
        ctx: ReconcileContext,
        spec: FileDownloadSpec,
        diags: Diagnostics,
    ) -> FileDownloadRecord:
        """Fetch the remote path and record the hash of what landed locally."""
        destination = Path(spec.destination).expanduser()
        if ctx.download_strategy == STRATEGY_ARCHIVE:
            path, content_hash = self._download_archive(ctx, spec, destination, diags)
        else:
            path, content_hash = self._download_direct(ctx, spec, destination)
        LOGGER.info("Downloaded %s:%s to %s", spec.instance, spec.source, path)
        return FileDownloadRecord(
            spec=FileDownloadSpec.from_dict(spec.to_dict()),
            path=str(path),
            content_hash=content_hash,
        )

    def read(
        self,
        ctx: ReconcileContext,
        record: FileDownloadRecord,
        diags: Diagnostics,
    ) -> FileDownloadRecord | None:
        """Drop the download when its instance or local copy is gone."""
        try:
            ctx.client.get_instance(record.spec.instance)
        except NotFoundError:
            LOGGER.info("Instance %s for download %s is gone", record.spec.instance, record.id)
            return None
        local = Path(record.path or record.spec.destination).expanduser()
        if not local.exists():
            diags.warn(
                "Destination missing",
                f"{local} no longer exists; it will be downloaded again",
            )
            return None
        return record

    def update(
        self,
        ctx: ReconcileContext,
        spec: FileDownloadSpec,
        record: FileDownloadRecord,
        diags: Diagnostics,
    ) -> FileDownloadRecord:
        """Record the new write options without fetching again."""
        return FileDownloadRecord(
            spec=FileDownloadSpec.from_dict(spec.to_dict()),
            path=record.path,
            content_hash=record.content_hash,
        )

    def delete(
        self,
        ctx: ReconcileContext,
        record: FileDownloadRecord,
        diags: Diagnostics,
    ) -> None:
        """Remove the local copy, best effort."""
        local = Path(record.path or record.spec.destination).expanduser()
        if not local.exists() and not local.is_symlink():
            return
        try:
            _remove_local(local)
        except OSError as exc:
            diags.warn("Failed to remove downloaded file", str(exc))

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------
    def _download_direct(
        self,
        ctx: ReconcileContext,
        spec: FileDownloadSpec,
        destination: Path,
    ) -> tuple[Path, str]:
        source_name = posixpath.basename(spec.source.rstrip("/")) or "download"
        staging = Path(tempfile.mkdtemp(prefix="mpassctl-download-"))
        try:
            ctx.client.transfer(
                TransferOptions(
                    sources=[f"{spec.instance}:{spec.source}"],
                    destination=str(staging),
                    recursive=spec.recursive,
                    parents=True,
                )
            )
            staged = staging / source_name
            if not spec.recursive:
                data = staged.read_bytes()
                path = write_file_bytes(
                    destination,
                    data,
                    source_name=source_name,
                    overwrite=spec.overwrite,
                    create_parents=spec.create_parents,
                )
                return path, hash_bytes(data)
            if destination.exists() or destination.is_symlink():
                if not spec.overwrite:
                    raise FileExistsError(
                        f"directory {destination} already exists and overwrite=false"
                    )
                _remove_local(destination)
            ensure_parent(destination, create=spec.create_parents)
            shutil.copytree(staged, destination)
            return destination, hash_directory(destination)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _download_archive(
        self,
        ctx: ReconcileContext,
        spec: FileDownloadSpec,
        destination: Path,
        diags: Diagnostics,
    ) -> tuple[Path, str]:
        remote = f"{spec.instance}:{spec.source}"
        if not spec.recursive:
            data = ctx.client.transfer_capture(remote)
            source_name = posixpath.basename(spec.source.rstrip("/")) or "download"
            path = write_file_bytes(
                destination,
                data,
                source_name=source_name,
                overwrite=spec.overwrite,
                create_parents=spec.create_parents,
            )
            return path, hash_bytes(data)

        cleaned = posixpath.normpath(spec.source)
        base_dir = posixpath.dirname(cleaned) or "/"
        target = posixpath.basename(cleaned)
        tarball = remote_archive_path(spec.instance, spec.source)
        ctx.client.exec(spec.instance, ["tar", "-C", base_dir, "-cf", tarball, target])
        try:
            data = ctx.client.transfer_capture(f"{spec.instance}:{tarball}")
        finally:
            try:
                ctx.client.exec(spec.instance, ["rm", "-f", tarball])
            except MultipassError as exc:
                diags.warn("Failed to remove remote archive", str(exc))
        extract_archive(
            data,
            destination,
            root=target,
            overwrite=spec.overwrite,
            create_parents=spec.create_parents,
        )
        return destination, hash_directory(destination)


__all__ = [
    "FileDownloadHandler",
    "FileDownloadRecord",
    "FileDownloadSpec",
    "FileUploadHandler",
    "FileUploadRecord",
    "FileUploadSpec",
    "STRATEGY_ARCHIVE",
    "STRATEGY_DIRECT",
    "download_id",
    "remote_archive_path",
    "upload_hash",
    "upload_id",
    "write_file_bytes",
]
