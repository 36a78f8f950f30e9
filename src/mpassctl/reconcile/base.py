"""Shared plumbing for resource reconciliation.

Each resource type subclasses :class:`ResourceHandler` and implements
``create``, ``read``, ``update`` and ``delete``. Those methods raise
:class:`MultipassError` (or :class:`OSError` for local file work) for hard
failures and record best-effort problems as
warnings on the :class:`Diagnostics` they receive. :meth:`ResourceHandler.apply`
turns a :class:`PlannedChange` into calls to those methods and converts hard
failures into error diagnostics.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

from ..multipass import MultipassClient, MultipassError, ValidationError

LOGGER = logging.getLogger(__name__)

SpecT = TypeVar("SpecT")
RecordT = TypeVar("RecordT")


class Severity(str, Enum):
    """Severity of a diagnostic."""

    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """A warning or error produced while reconciling a resource."""

    severity: Severity
    summary: str
    detail: str = ""

    def __str__(self) -> str:
        """Return ``summary: detail`` (or just the summary)."""
        return f"{self.summary}: {self.detail}" if self.detail else self.summary


@dataclass(slots=True)
class Diagnostics:
    """Ordered collection of diagnostics."""

    items: list[Diagnostic] = field(default_factory=list)

    def warn(self, summary: str, detail: str = "") -> None:
        """Record a non-blocking warning."""
        LOGGER.warning("%s: %s", summary, detail)
        self.items.append(Diagnostic(Severity.WARNING, summary, detail))

    def error(self, summary: str, detail: str = "") -> None:
        """Record a hard failure."""
        LOGGER.error("%s: %s", summary, detail)
        self.items.append(Diagnostic(Severity.ERROR, summary, detail))

    def extend(self, other: Diagnostics) -> None:
        """Append every diagnostic from *other*."""
        self.items.extend(other.items)

    @property
    def has_errors(self) -> bool:
        """Return ``True`` when any error was recorded."""
        return any(item.severity is Severity.ERROR for item in self.items)

    @property
    def warnings(self) -> list[Diagnostic]:
        """Return the recorded warnings."""
        return [item for item in self.items if item.severity is Severity.WARNING]

    @property
    def errors(self) -> list[Diagnostic]:
        """Return the recorded errors."""
        return [item for item in self.items if item.severity is Severity.ERROR]

    def __iter__(self) -> Iterator[Diagnostic]:
        """Iterate over diagnostics in recording order."""
        return iter(self.items)

    def __len__(self) -> int:
        """Return the number of diagnostics."""
        return len(self.items)


class Transition(str, Enum):
    """What applying a plan does to a resource."""

    NOOP = "noop"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class PlannedChange:
    """A transition together with the attributes that triggered it."""

    transition: Transition
    reasons: tuple[str, ...] = ()


@dataclass(slots=True)
class ApplyResult(Generic[RecordT]):
    """Outcome of applying or refreshing one resource.

    ``record`` is ``None`` when the resource is no longer tracked.
    """

    record: RecordT | None
    diagnostics: Diagnostics = field(default_factory=Diagnostics)


@dataclass(slots=True)
class ReconcileContext:
    """Dependencies handed to every reconciliation call."""

    client: MultipassClient
    default_image: str = ""
    download_strategy: str = "direct"


class ResourceHandler(ABC, Generic[SpecT, RecordT]):
    """Lifecycle operations for one resource type."""

    kind: str = "resource"

    # ------------------------------------------------------------------
    # Operations implemented by each resource type
    # ------------------------------------------------------------------
    @abstractmethod
    def create(self, ctx: ReconcileContext, spec: SpecT, diags: Diagnostics) -> RecordT:
        """Create the resource and return its tracked record."""

    @abstractmethod
    def read(
        self,
        ctx: ReconcileContext,
        record: RecordT,
        diags: Diagnostics,
    ) -> RecordT | None:
        """Return the refreshed record, or ``None`` when the resource is gone."""

    @abstractmethod
    def update(
        self,
        ctx: ReconcileContext,
        spec: SpecT,
        record: RecordT,
        diags: Diagnostics,
    ) -> RecordT:
        """Apply in-place changes and return the new record."""

    @abstractmethod
    def delete(self, ctx: ReconcileContext, record: RecordT, diags: Diagnostics) -> None:
        """Remove the resource."""

    @abstractmethod
    def replace_reasons(self, spec: SpecT, record: RecordT) -> list[str]:
        """Return attributes whose change forces delete-then-create."""

    @abstractmethod
    def update_reasons(self, spec: SpecT, record: RecordT) -> list[str]:
        """Return attributes that can be changed in place."""

    @abstractmethod
    def spec_id(self, spec: SpecT) -> str:
        """Return the identity a record created from *spec* would carry."""

    @abstractmethod
    def record_id(self, record: RecordT) -> str:
        """Return the identity of *record*."""

    def validate(self, spec: SpecT) -> None:  # noqa: B027 - optional hook
        """Raise :class:`ValidationError` when *spec* is unusable."""

    def import_record(self, ctx: ReconcileContext, import_id: str) -> RecordT | None:
        """Return a record for an existing resource, or ``None`` when it is absent."""
        raise ValidationError(f"import is not supported for {self.kind} resources")

    # ------------------------------------------------------------------
    # Planning and dispatch
    # ------------------------------------------------------------------
    def plan(self, spec: SpecT | None, record: RecordT | None) -> PlannedChange:
        """Classify the change needed to move *record* towards *spec*."""
        if spec is None and record is None:
            return PlannedChange(Transition.NOOP)
        if spec is None:
            return PlannedChange(Transition.DELETE)
        if record is None:
            return PlannedChange(Transition.CREATE)
        replace = self.replace_reasons(spec, record)
        if replace:
            return PlannedChange(Transition.REPLACE, tuple(replace))
        update = self.update_reasons(spec, record)
        if update:
            return PlannedChange(Transition.UPDATE, tuple(update))
        return PlannedChange(Transition.NOOP)

    def apply(
        self,
        ctx: ReconcileContext,
        change: PlannedChange,
        spec: SpecT | None,
        record: RecordT | None,
    ) -> ApplyResult[RecordT]:
        """Carry out *change* and return the record that should be tracked."""
        diags = Diagnostics()
        transition = change.transition
        current = record
        if transition is Transition.NOOP:
            return ApplyResult(record, diags)
        if spec is None and transition is not Transition.DELETE:
            raise ValueError(f"{transition.value} requires a desired spec")
        try:
            if spec is not None and transition is not Transition.DELETE:
                self.validate(spec)
            if transition in (Transition.DELETE, Transition.REPLACE):
                if record is not None:
                    self.delete(ctx, record, diags)
                    if diags.has_errors:
                        return ApplyResult(record, diags)
                current = None
            if spec is None or transition is Transition.DELETE:
                return ApplyResult(None, diags)
            if transition is Transition.UPDATE and current is not None:
                current = self.update(ctx, spec, current, diags)
            else:
                current = self.create(ctx, spec, diags)
        except (MultipassError, OSError) as exc:
            diags.error(f"Failed to {transition.value} {self.kind}", str(exc))
        return ApplyResult(current, diags)

    def refresh(self, ctx: ReconcileContext, record: RecordT) -> ApplyResult[RecordT]:
        """Re-read *record*, keeping it unchanged when the read itself fails."""
        diags = Diagnostics()
        try:
            return ApplyResult(self.read(ctx, record, diags), diags)
        except (MultipassError, OSError) as exc:
            diags.error(f"Failed to read {self.kind}", str(exc))
            return ApplyResult(record, diags)


__all__ = [
    "ApplyResult",
    "Diagnostic",
    "Diagnostics",
    "PlannedChange",
    "ReconcileContext",
    "ResourceHandler",
    "Severity",
    "Transition",
]
