"""Exception taxonomy for interactions with the ``multipass`` binary."""
from __future__ import annotations

from collections.abc import Sequence


class MultipassError(RuntimeError):
    """Base class for every failure raised by the multipass layer."""


class ValidationError(MultipassError):
    """Raised when a request is rejected locally before any command runs."""


class BinaryNotFoundError(MultipassError):
    """Raised when the ``multipass`` executable cannot be located."""


class NotFoundError(MultipassError):
    """Raised when ``multipass`` reports that the target does not exist."""

    def __init__(self, message: str, *, stderr: str = "") -> None:
        """Store the raw stderr alongside the message."""
        super().__init__(message)
        self.stderr = stderr


class MissingEntityError(NotFoundError):
    """Raised when a successful query does not mention the requested entity."""

    def __init__(self, name: str) -> None:
        """Record the missing entity name."""
        super().__init__(f"instance {name!r} not present in multipass output")
        self.name = name


class CommandTimeoutError(MultipassError):
    """Raised when a command exceeds its deadline."""

    def __init__(self, args: Sequence[str], timeout: float, message: str | None = None) -> None:
        """Record the command that timed out."""
        self.command = list(args)
        self.timeout = timeout
        super().__init__(
            message
            or f"multipass command timed out after {timeout:g}s: {' '.join(self.command)}"
        )


class CommandCancelledError(CommandTimeoutError):
    """Raised when the caller cancels an in-flight command."""

    def __init__(self, args: Sequence[str]) -> None:
        """Record the command that was cancelled."""
        super().__init__(args, 0.0, f"multipass command cancelled: {' '.join(args)}")


class ExternalToolError(MultipassError):
    """Raised when ``multipass`` exits non-zero for a reason other than absence."""

    def __init__(
        self,
        args: Sequence[str],
        *,
        returncode: int | None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Capture the full invocation context for diagnostics."""
        self.command = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = stderr or stdout or "no output"
        super().__init__(
            f"multipass {' '.join(self.command)} failed (exit {returncode}): {message}"
        )


class MalformedOutputError(MultipassError):
    """Raised when output does not match the expected structure."""


__all__ = [
    "BinaryNotFoundError",
    "CommandCancelledError",
    "CommandTimeoutError",
    "ExternalToolError",
    "MalformedOutputError",
    "MissingEntityError",
    "MultipassError",
    "NotFoundError",
    "ValidationError",
]
