"""Access layer for the ``multipass`` command line."""
from __future__ import annotations

from .cache import ReadThroughCache, ResourceKind
from .client import MultipassClient
from .errors import (
    BinaryNotFoundError,
    CommandCancelledError,
    CommandTimeoutError,
    ExternalToolError,
    MalformedOutputError,
    MissingEntityError,
    MultipassError,
    NotFoundError,
    ValidationError,
)
from .executor import CommandExecutor

__all__ = [
    "BinaryNotFoundError",
    "CommandCancelledError",
    "CommandExecutor",
    "CommandTimeoutError",
    "ExternalToolError",
    "MalformedOutputError",
    "MissingEntityError",
    "MultipassClient",
    "MultipassError",
    "NotFoundError",
    "ReadThroughCache",
    "ResourceKind",
    "ValidationError",
]
