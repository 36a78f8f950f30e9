"""Reconcile declared ``multipass`` aliases."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from ..models import Alias
from ..multipass import NotFoundError, ValidationError
from .base import Diagnostics, ReconcileContext, ResourceHandler
from .coerce import as_str

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AliasSpec:
    """Declared alias."""

    name: str
    instance: str
    command: str
    working_directory: str = ""

    def to_alias(self) -> Alias:
        """Return the domain object passed to the client."""
        return Alias(
            name=self.name,
            instance=self.instance,
            command=self.command,
            working_directory=self.working_directory,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "instance": self.instance,
            "command": self.command,
            "working_directory": self.working_directory,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AliasSpec:
        """Build a spec (or record) from its serialised form."""
        return cls(
            name=as_str(data.get("name")),
            instance=as_str(data.get("instance")),
            command=as_str(data.get("command")),
            working_directory=as_str(data.get("working_directory")),
        )


# An alias has no computed attributes, so its record mirrors the spec.
AliasRecord = AliasSpec


class AliasHandler(ResourceHandler[AliasSpec, AliasRecord]):
    """Lifecycle of ``multipass`` aliases."""

    kind = "alias"

    def spec_id(self, spec: AliasSpec) -> str:
        """Return the alias name."""
        return spec.name

    def record_id(self, record: AliasRecord) -> str:
        """Return the alias name."""
        return record.name

    def validate(self, spec: AliasSpec) -> None:
        """Require name, instance and command."""
        if not spec.name or not spec.instance or not spec.command:
            raise ValidationError("alias requires name, instance, and command")

    def replace_reasons(self, spec: AliasSpec, record: AliasRecord) -> list[str]:
        """Renaming an alias replaces it."""
        return ["name"] if spec.name != record.name else []

    def update_reasons(self, spec: AliasSpec, record: AliasRecord) -> list[str]:
        """Return target attributes that changed."""
        return [
            attribute
            for attribute in ("instance", "command", "working_directory")
            if getattr(spec, attribute) != getattr(record, attribute)
        ]

    def create(self, ctx: ReconcileContext, spec: AliasSpec, diags: Diagnostics) -> AliasRecord:
        """Define the alias."""
        ctx.client.create_alias(spec.to_alias())
        return AliasSpec.from_dict(spec.to_dict())

    def read(
        self,
        ctx: ReconcileContext,
        record: AliasRecord,
        diags: Diagnostics,
    ) -> AliasRecord | None:
        """Return the alias as ``multipass`` reports it, or ``None`` if absent."""
        for alias in ctx.client.list_aliases():
            if alias.name == record.name:
                return AliasSpec(
                    name=alias.name,
                    instance=alias.instance,
                    command=alias.command,
                    working_directory=alias.working_directory,
                )
        LOGGER.info("Alias %s no longer exists", record.name)
        return None

    def update(
        self,
        ctx: ReconcileContext,
        spec: AliasSpec,
        record: AliasRecord,
        diags: Diagnostics,
    ) -> AliasRecord:
        """Redefine the alias by issuing ``alias`` again."""
        return self.create(ctx, spec, diags)

    def delete(self, ctx: ReconcileContext, record: AliasRecord, diags: Diagnostics) -> None:
        """Remove the alias; an already missing alias is fine."""
        try:
            ctx.client.delete_alias(record.name)
        except NotFoundError:
            LOGGER.info("Alias %s already gone", record.name)

    def import_record(self, ctx: ReconcileContext, import_id: str) -> AliasRecord | None:
        """Start tracking an existing alias by name."""
        if not import_id:
            raise ValidationError("Expected an alias name to import.")
        return self.read(ctx, AliasSpec(name=import_id, instance="", command=""), Diagnostics())


__all__ = ["AliasHandler", "AliasRecord", "AliasSpec"]
