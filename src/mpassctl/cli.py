"""Typer-powered command line for ``mpassctl``.

Read-only commands query ``multipass`` directly. ``plan``, ``apply``,
``destroy`` and ``import`` reconcile the resources declared in a manifest
against the records kept in the state registry.
"""
from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .engine import (
    RESOURCE_TYPES,
    PlanEntry,
    apply_plan,
    build_plan,
    refresh_resources,
    resource_type,
)
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .manifest import Manifest, ManifestError, load_manifest
from .multipass import (
    BinaryNotFoundError,
    MultipassError,
    NotFoundError,
    ValidationError,
)
from .provider import configure_provider
from .reconcile import Diagnostics, ReconcileContext, Severity, Transition, datasources
from .state import StateRegistry, StateRegistryError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to mpassctl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)
REFRESH_OPTION = typer.Option(
    True,
    "--refresh/--no-refresh",
    help="Re-read tracked resources from multipass before planning.",
)
MANIFEST_ARGUMENT = typer.Argument(
    ...,
    exists=True,
    dir_okay=False,
    help="Path to the desired-state manifest (YAML).",
)

_ACTION_STYLE = {
    Transition.NOOP: "[dim]no-op[/dim]",
    Transition.CREATE: "[green]create[/green]",
    Transition.UPDATE: "[yellow]update[/yellow]",
    Transition.REPLACE: "[magenta]replace[/magenta]",
    Transition.DELETE: "[red]delete[/red]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Declarative lifecycle management for Multipass virtual machines.

        Describe instances, snapshots, aliases and file transfers in a YAML
        manifest, review the changes with `plan`, and reconcile them with `apply`.
        """
    ).strip(),
)
instances_app = typer.Typer(help="Inspect Multipass instances.")
images_app = typer.Typer(help="Inspect launchable images and blueprints.")
networks_app = typer.Typer(help="Inspect host networks.")
aliases_app = typer.Typer(help="Inspect command aliases.")
snapshots_app = typer.Typer(help="Inspect instance snapshots.")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    logger: StructuredLogger
    reconcile: ReconcileContext | None = None
    provider_diagnostics: Diagnostics | None = None


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    registry = StateRegistry(config.registry_dir)
    logger = StructuredLogger(config.logs_dir)
    runtime = RuntimeContext(config=config, registry=registry, logger=logger)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _get_provider(runtime: RuntimeContext, op: OperationScope) -> ReconcileContext:
    """Build the multipass client on first use, reporting version warnings once."""
    if runtime.reconcile is not None:
        return runtime.reconcile
    try:
        reconcile, diags = configure_provider(runtime.config)
    except MultipassError as exc:
        _command_error(op, str(exc), rc=_exit_code(exc))
    op.add_step("provider.configure", status="warning" if diags.warnings else "success")
    runtime.reconcile = reconcile
    runtime.provider_diagnostics = diags
    return reconcile


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the mpassctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"mpassctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _exit_code(exc: Exception) -> int:
    if isinstance(exc, (ValidationError, ManifestError)):
        return ExitCode.VALIDATION
    if isinstance(exc, (BinaryNotFoundError, StateRegistryError, OSError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _print_diagnostics(diags: Diagnostics) -> None:
    for item in diags:
        style = "red" if item.severity is Severity.ERROR else "yellow"
        console.print(f"[{style}]{item.severity.value}[/{style}]: {item}")


def _collect_diagnostics(runtime: RuntimeContext, *extra: Diagnostics) -> Diagnostics:
    merged = Diagnostics()
    if runtime.provider_diagnostics is not None:
        merged.extend(runtime.provider_diagnostics)
    for diags in extra:
        merged.extend(diags)
    return merged


def _finish(
    op: OperationScope,
    message: str,
    diags: Diagnostics,
    *,
    changed: int = 0,
    quiet: bool = False,
) -> None:
    """Close *op* as success or warning depending on *diags*."""
    if not quiet:
        _print_diagnostics(diags)
    if diags.warnings:
        op.warning(message, warnings=[str(item) for item in diags.warnings], changed=changed)
    else:
        op.success(message, changed=changed)


def _diagnostics_payload(diags: Diagnostics) -> list[dict[str, str]]:
    return [
        {"severity": item.severity.value, "summary": item.summary, "detail": item.detail}
        for item in diags
    ]


def _read_resources(runtime: RuntimeContext, op: OperationScope) -> dict[str, dict[str, dict]]:
    try:
        return runtime.registry.read_resources()
    except StateRegistryError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


def _load_manifest(op: OperationScope, path: Path) -> Manifest:
    try:
        return load_manifest(path)
    except ManifestError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)


def _render_plan(plan: Sequence[PlanEntry]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Kind", style="bold")
    table.add_column("Key")
    table.add_column("Action")
    table.add_column("Reasons")
    if not plan:
        table.add_row("(none)", "", "", "")
    for entry in plan:
        table.add_row(
            entry.kind,
            entry.key,
            _ACTION_STYLE[entry.transition],
            ", ".join(entry.change.reasons),
        )
    console.print(table)


def _count_changes(plan: Sequence[PlanEntry]) -> int:
    return sum(1 for entry in plan if entry.transition is not Transition.NOOP)


# ----------------------------------------------------------------------
# Read-only commands
# ----------------------------------------------------------------------
app.add_typer(instances_app, name="instances")
app.add_typer(images_app, name="images")
app.add_typer(networks_app, name="networks")
app.add_typer(aliases_app, name="aliases")
app.add_typer(snapshots_app, name="snapshots")


@app.command("version")
def version_command(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the mpassctl and multipass versions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "version",
        args={"json": json_output},
        target={"kind": "meta", "scope": "version"},
    ) as op:
        provider = _get_provider(runtime, op)
        try:
            multipass_version = provider.client.version()
        except MultipassError as exc:
            _command_error(op, str(exc), rc=_exit_code(exc))
        diags = _collect_diagnostics(runtime)
        if json_output:
            console.print_json(
                data={
                    "mpassctl": __version__,
                    "multipass": multipass_version,
                    "diagnostics": _diagnostics_payload(diags),
                }
            )
        else:
            console.print(f"mpassctl {__version__}")
            console.print(f"multipass {multipass_version}")
        _finish(op, "Reported versions.", diags, quiet=json_output)


@instances_app.command("list")
def instances_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    refresh: bool = typer.Option(False, "--refresh", help="Bypass the read-through cache."),
) -> None:
    """List instances known to multipass."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instances list",
        args={"json": json_output, "refresh": refresh},
        target={"kind": "instances"},
    ) as op:
        provider = _get_provider(runtime, op)
        try:
            instances = provider.client.list_instances(refresh=refresh)
        except MultipassError as exc:
            _command_error(op, str(exc), rc=_exit_code(exc))

        if json_output:
            console.print_json(data={"instances": [item.to_dict() for item in instances]})
            op.success("Reported instances as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("State")
        table.add_column("IPv4")
        table.add_column("Release")
        if not instances:
            table.add_row("(none)", "", "", "")
        for instance in instances:
            table.add_row(
                instance.name,
                instance.state.value,
                ", ".join(instance.ipv4) or "--",
                instance.release or "--",
            )
        console.print(table)
        _finish(op, "Reported instances.", _collect_diagnostics(runtime))


@instances_app.command("show")
def instances_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to describe."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show detailed information for one instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instances show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        provider = _get_provider(runtime, op)
        try:
            instance = datasources.instance_info(provider, name)
        except NotFoundError:
            _command_error(op, f"Instance '{name}' not found.", rc=ExitCode.PROVIDER)
        except MultipassError as exc:
            _command_error(op, str(exc), rc=_exit_code(exc))

        if json_output:
            console.print_json(data={"instance": instance.to_dict()})
            op.success("Reported instance as JSON.", changed=0)
            return

        table = Table(show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Name", instance.name)
        table.add_row("State", instance.state.value)
        table.add_row("Release", instance.release or "--")
        table.add_row("Image", instance.image_release or "--")
        table.add_row("CPUs", str(instance.cpu_count))
        table.add_row("Memory", f"{instance.memory_used}/{instance.memory_total} bytes")
        table.add_row("Disk", f"{instance.disk_used}/{instance.disk_total} bytes")
        table.add_row("IPv4", ", ".join(instance.ipv4) or "--")
        table.add_row("Snapshots", str(instance.snapshot_count))
        mounts = [
            f"{mount.host_path} => {mount.instance_path}" + (" (ro)" if mount.read_only else "")
            for mount in instance.mounts
        ]
        table.add_row("Mounts", "\n".join(mounts) or "--")
        console.print(table)
        _finish(op, "Reported instance.", _collect_diagnostics(runtime))


@images_app.command("list")
def images_list(
    ctx: typer.Context,
    name: str = typer.Option("", "--name", help="Only the image with this exact name."),
    alias: str = typer.Option("", "--alias", help="Only images carrying this alias."),
    kind: str = typer.Option("", "--kind", help="Only 'image' or 'blueprint' entries."),
    query: str = typer.Option("", "--query", help="Substring of name or description."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List launchable images and blueprints."""
    runtime = _get_runtime(ctx)
    args = {"name": name, "alias": alias, "kind": kind, "query": query, "json": json_output}
    with runtime.logger.operation("images list", args=args, target={"kind": "images"}) as op:
        provider = _get_provider(runtime, op)
        try:
            images = datasources.list_images(
                provider, name=name, alias=alias, kind=kind, query=query
            )
        except MultipassError as exc:
            _command_error(op, str(exc), rc=_exit_code(exc))

        if json_output:
            console.print_json(data={"images": [item.to_dict() for item in images]})
            op.success("Reported images as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Kind")
        table.add_column("Aliases")
        table.add_column("Version")
        table.add_column("Description")
        if not images:
            table.add_row("(none)", "", "", "", "")
        for image in images:
            table.add_row(
                image.name,
                image.kind.value,
                ", ".join(image.aliases),
                image.version,
                image.description,
            )
        console.print(table)
        _finish(op, "Reported images.", _collect_diagnostics(runtime))


@networks_app.command("list")
def networks_list(
    ctx: typer.Context,
    name: str = typer.Option("", "--name", help="Only the network with this exact name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List host networks available for bridging."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "networks list",
        args={"name": name, "json": json_output},
        target={"kind": "networks"},
    ) as op:
        provider = _get_provider(runtime, op)
        try:
            networks = datasources.list_networks(provider, name=name)
        except MultipassError as exc:
            _command_error(op, str(exc), rc=_exit_code(exc))

        if json_output:
            console.print_json(data={"networks": [item.to_dict() for item in networks]})
            op.success("Reported networks as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Type")
        table.add_column("Description")
        if not networks:
            table.add_row("(none)", "", "")
        for network in networks:
            table.add_row(network.name, network.type, network.description)
        console.print(table)
        _finish(op, "Reported networks.", _collect_diagnostics(runtime))


@aliases_app.command("list")
def aliases_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List command aliases."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "aliases list",
        args={"json": json_output},
        target={"kind": "aliases"},
    ) as op:
        provider = _get_provider(runtime, op)
        try:
            aliases = provider.client.list_aliases()
        except MultipassError as exc:
            _command_error(op, str(exc), rc=_exit_code(exc))

        if json_output:
            console.print_json(data={"aliases": [item.to_dict() for item in aliases]})
            op.success("Reported aliases as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Alias", style="bold")
        table.add_column("Instance")
        table.add_column("Command")
        table.add_column("Working directory")
        if not aliases:
            table.add_row("(none)", "", "", "")
        for alias in aliases:
            table.add_row(alias.name, alias.instance, alias.command, alias.working_directory)
        console.print(table)
        _finish(op, "Reported aliases.", _collect_diagnostics(runtime))


@snapshots_app.command("list")
def snapshots_list(
    ctx: typer.Context,
    instance: str = typer.Argument(..., help="Instance whose snapshots to list."),
    name: str = typer.Option("", "--name", help="Only the snapshot with this name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List snapshots of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshots list",
        args={"instance": instance, "name": name, "json": json_output},
        target={"kind": "snapshots", "instance": instance},
    ) as op:
        provider = _get_provider(runtime, op)
        try:
            snapshots = datasources.list_snapshots(provider, instance, name=name)
        except MultipassError as exc:
            _command_error(op, str(exc), rc=_exit_code(exc))

        if json_output:
            console.print_json(data={"snapshots": [item.to_dict() for item in snapshots]})
            op.success("Reported snapshots as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Snapshot", style="bold")
        table.add_column("Parent")
        table.add_column("Comment")
        if not snapshots:
            table.add_row("(none)", "", "")
        for snapshot in snapshots:
            table.add_row(snapshot.name, snapshot.parent or "--", snapshot.comment)
        console.print(table)
        _finish(op, "Reported snapshots.", _collect_diagnostics(runtime))


# ----------------------------------------------------------------------
# Reconciliation commands
# ----------------------------------------------------------------------
@app.command("plan")
def plan_command(
    ctx: typer.Context,
    manifest_path: Path = MANIFEST_ARGUMENT,
    refresh: bool = REFRESH_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the changes `apply` would make."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"manifest": str(manifest_path), "refresh": refresh, "json": json_output},
        target={"kind": "manifest", "path": str(manifest_path)},
    ) as op:
        manifest = _load_manifest(op, manifest_path)
        resources = _read_resources(runtime, op)
        refreshed = Diagnostics()
        if refresh:
            provider = _get_provider(runtime, op)
            refreshed = refresh_resources(provider, resources)
            op.add_step("state.refresh", status="warning" if refreshed.items else "success")
        try:
            plan = build_plan(manifest, resources)
        except ManifestError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        diags = _collect_diagnostics(runtime, refreshed)

        if json_output:
            console.print_json(
                data={
                    "changes": [entry.to_dict() for entry in plan],
                    "diagnostics": _diagnostics_payload(diags),
                }
            )
        else:
            _render_plan(plan)
            console.print(f"{_count_changes(plan)} change(s) planned.")
        _finish(op, "Planned changes.", diags, quiet=json_output)


@app.command("apply")
def apply_command(
    ctx: typer.Context,
    manifest_path: Path = MANIFEST_ARGUMENT,
    refresh: bool = REFRESH_OPTION,
) -> None:
    """Reconcile multipass with the manifest."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "apply",
        args={"manifest": str(manifest_path), "refresh": refresh},
        target={"kind": "manifest", "path": str(manifest_path)},
    ) as op:
        manifest = _load_manifest(op, manifest_path)
        _reconcile(runtime, op, manifest, refresh=refresh, verb="Applied")


@app.command("destroy")
def destroy_command(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    refresh: bool = REFRESH_OPTION,
) -> None:
    """Delete every resource tracked in the state registry."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "destroy",
        args={"yes": yes, "refresh": refresh},
        target={"kind": "registry", "path": str(runtime.registry.root)},
    ) as op:
        if not yes and not typer.confirm("Delete every tracked resource?", default=False):
            console.print("[yellow]Aborted.[/yellow]")
            op.warning("Destroy aborted by user.", warnings=["aborted"], changed=0)
            return
        _reconcile(runtime, op, Manifest(), refresh=refresh, verb="Destroyed")


def _reconcile(
    runtime: RuntimeContext,
    op: OperationScope,
    manifest: Manifest,
    *,
    refresh: bool,
    verb: str,
) -> None:
    resources = _read_resources(runtime, op)
    provider = _get_provider(runtime, op)
    refreshed = Diagnostics()
    if refresh:
        refreshed = refresh_resources(provider, resources)
        runtime.registry.write_resources(resources)
        op.add_step("state.refresh", status="warning" if refreshed.items else "success")

    try:
        plan = build_plan(manifest, resources)
    except ManifestError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    _render_plan([entry for entry in plan if entry.transition is not Transition.NOOP])
    summary = apply_plan(provider, plan, resources, persist=runtime.registry.write_resources)
    op.add_step(
        "reconcile.apply",
        status="error" if summary.failed else "success",
        detail=f"{summary.changed} changed, {summary.failed} failed",
    )
    diags = _collect_diagnostics(runtime, refreshed, summary.diagnostics)
    if diags.has_errors:
        _print_diagnostics(diags)
        _command_error(
            op,
            f"{summary.failed} resource(s) failed to reconcile.",
            rc=ExitCode.PROVIDER,
            errors=[str(item) for item in diags.errors],
        )
    console.print(f"[green]{verb} {summary.changed} change(s).[/green]")
    _finish(op, f"{verb} {summary.changed} change(s).", diags, changed=summary.changed)


@app.command("import")
def import_command(
    ctx: typer.Context,
    kind: str = typer.Argument(
        ...,
        help="Resource kind: instances, snapshots, aliases or file_uploads.",
    ),
    import_id: str = typer.Argument(
        ...,
        help="Identity of the existing resource (e.g. 'web', 'web.snap1', 'web:/etc/motd').",
    ),
) -> None:
    """Start tracking a resource that already exists in multipass."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "import",
        args={"kind": kind, "id": import_id},
        target={"kind": kind, "id": import_id},
    ) as op:
        if kind not in {item.kind for item in RESOURCE_TYPES}:
            allowed = ", ".join(item.kind for item in RESOURCE_TYPES)
            _command_error(op, f"Unknown resource kind '{kind}'. Expected one of: {allowed}.")
        handler = resource_type(kind).handler
        provider = _get_provider(runtime, op)
        try:
            record = handler.import_record(provider, import_id)
        except MultipassError as exc:
            _command_error(op, str(exc), rc=_exit_code(exc))
        if record is None:
            _command_error(op, f"No {handler.kind} matches '{import_id}'.", rc=ExitCode.PROVIDER)

        key = handler.record_id(record)
        try:
            runtime.registry.upsert_resource(kind, key, record.to_dict())
        except (StateRegistryError, OSError) as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        console.print(f"[green]Imported {handler.kind} '{key}'.[/green]")
        _finish(op, f"Imported {handler.kind} '{key}'.", _collect_diagnostics(runtime), changed=1)


__all__ = ["app"]
