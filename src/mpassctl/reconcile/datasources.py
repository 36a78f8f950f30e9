"""Read-only lookups over ``multipass`` state."""
from __future__ import annotations

from collections.abc import Iterable

from ..models import Image, ImageKind, Instance, Network, Snapshot
from ..multipass import ValidationError
from .base import ReconcileContext


def instance_info(ctx: ReconcileContext, name: str) -> Instance:
    """Return details for *name*; an unknown instance raises :class:`NotFoundError`."""
    if not name:
        raise ValidationError("instance name is required")
    return ctx.client.get_instance(name)


def filter_images(
    images: Iterable[Image],
    *,
    name: str = "",
    alias: str = "",
    kind: str = "",
    query: str = "",
) -> list[Image]:
    """Return images matching every given filter.

    ``name`` matches exactly, ``alias`` case-insensitively against any alias,
    ``kind`` is ``image`` or ``blueprint``, and ``query`` is a case-insensitive
    substring of the name or description.
    """
    wanted_kind: ImageKind | None = None
    if kind:
        try:
            wanted_kind = ImageKind(kind.lower())
        except ValueError as exc:
            raise ValidationError(f"kind must be 'image' or 'blueprint', got {kind!r}") from exc
    needle = query.lower()
    alias_lower = alias.lower()

    matches: list[Image] = []
    for image in images:
        if name and image.name != name:
            continue
        if alias_lower and alias_lower not in (item.lower() for item in image.aliases):
            continue
        if wanted_kind is not None and image.kind is not wanted_kind:
            continue
        if needle and needle not in image.name.lower() and needle not in image.description.lower():
            continue
        matches.append(image)
    return matches


def list_images(
    ctx: ReconcileContext,
    *,
    name: str = "",
    alias: str = "",
    kind: str = "",
    query: str = "",
) -> list[Image]:
    """Return launchable images filtered as in :func:`filter_images`."""
    return filter_images(
        ctx.client.list_images(), name=name, alias=alias, kind=kind, query=query
    )


def list_networks(ctx: ReconcileContext, *, name: str = "") -> list[Network]:
    """Return host networks, optionally only the one called *name*."""
    networks = ctx.client.list_networks()
    if name:
        networks = [network for network in networks if network.name == name]
    return networks


def list_snapshots(ctx: ReconcileContext, instance: str, *, name: str = "") -> list[Snapshot]:
    """Return snapshots of *instance*, optionally only the one called *name*."""
    if not instance:
        raise ValidationError("instance name is required")
    snapshots = ctx.client.list_snapshots(instance)
    if name:
        snapshots = [snapshot for snapshot in snapshots if snapshot.name == name]
    return snapshots


__all__ = ["filter_images", "instance_info", "list_images", "list_networks", "list_snapshots"]
