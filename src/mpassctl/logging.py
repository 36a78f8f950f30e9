"""Structured operation logging for mpassctl commands.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which
appends one JSON record to ``operations.jsonl`` and a one-line summary to
``mpassctl.log`` once the command finishes. Library modules log through the
standard :mod:`logging` module instead.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from . import __version__

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "mpassctl.log"


def _sanitize(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return _sanitize(value.value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Mutable record of a single command execution."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started: float = field(default_factory=time.monotonic)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step of the operation."""
        entry: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            entry["detail"] = _sanitize(detail)
        self.steps.append(entry)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            errors=list(errors or [message]),
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": warnings or [],
            "errors": errors or [],
            "context": _sanitize(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to ``operations.jsonl``."""
        return {
            "timestamp": datetime.now(UTC).isoformat(),
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(dict(self.args)),
            "target": _sanitize(dict(self.target)),
            "steps": list(self.steps),
            "result": self.result or {"status": "unknown"},
            "duration_ms": int((time.monotonic() - self.started) * 1000),
            "context": {"mpassctl_version": __version__},
        }


class StructuredLogger:
    """Append operation records to the logs directory."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling the logger when it is unusable."""
        self.log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self.log_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.log_dir / HUMAN_LOG_NAME
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation logging disabled; cannot create %s: %s", self.log_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSON lines log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(command=command, args=dict(args or {}), target=dict(target or {}))
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        result = record["result"]
        status = result.get("status", "unknown") if isinstance(result, dict) else "unknown"
        message = result.get("message", "") if isinstance(result, dict) else ""
        human_line = f"{record['timestamp']} {str(status).upper()} {scope.command}: {message}\n"
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(human_line)
        except OSError as exc:
            LOGGER.warning("Operation logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
