"""Declarative reconciliation of ``multipass`` resources."""
from __future__ import annotations

from .alias import AliasHandler, AliasRecord, AliasSpec
from .base import (
    ApplyResult,
    Diagnostic,
    Diagnostics,
    PlannedChange,
    ReconcileContext,
    ResourceHandler,
    Severity,
    Transition,
)
from .files import (
    FileDownloadHandler,
    FileDownloadRecord,
    FileDownloadSpec,
    FileUploadHandler,
    FileUploadRecord,
    FileUploadSpec,
)
from .instance import InstanceHandler, InstanceRecord, InstanceSpec
from .snapshot import SnapshotHandler, SnapshotRecord, SnapshotSpec

__all__ = [
    "AliasHandler",
    "AliasRecord",
    "AliasSpec",
    "ApplyResult",
    "Diagnostic",
    "Diagnostics",
    "FileDownloadHandler",
    "FileDownloadRecord",
    "FileDownloadSpec",
    "FileUploadHandler",
    "FileUploadRecord",
    "FileUploadSpec",
    "InstanceHandler",
    "InstanceRecord",
    "InstanceSpec",
    "PlannedChange",
    "ReconcileContext",
    "ResourceHandler",
    "Severity",
    "SnapshotHandler",
    "SnapshotRecord",
    "SnapshotSpec",
    "Transition",
]
