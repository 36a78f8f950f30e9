"""Typed facade over the ``multipass`` command line.

:class:`MultipassClient` exposes one method per ``multipass`` action. Argument
vectors are built by the module-level ``build_*`` helpers so that identical
requests always produce identical invocations. List queries go through a
:class:`ReadThroughCache`; mutations invalidate the slot they affect.
"""
from __future__ import annotations

import copy
import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Sequence
from pathlib import Path

from ..models import (
    Alias,
    Image,
    Instance,
    LaunchOptions,
    Mount,
    Network,
    NetworkAttachment,
    Snapshot,
    TransferOptions,
)
from . import parsers
from .cache import DEFAULT_CACHE_TTL, ReadThroughCache, ResourceKind
from .errors import BinaryNotFoundError, ValidationError
from .executor import CommandExecutor

LOGGER = logging.getLogger(__name__)

CAPTURE_DESTINATION = "-"


# ----------------------------------------------------------------------
# Argument builders
# ----------------------------------------------------------------------
def format_network(attachment: NetworkAttachment) -> str:
    """Return the ``--network`` value for *attachment*, which must be named."""
    if not attachment.name:
        raise ValidationError("network attachments require a name")
    if not attachment.mode and not attachment.mac:
        return attachment.name
    parts = [f"name={attachment.name}"]
    if attachment.mode:
        parts.append(f"mode={attachment.mode}")
    if attachment.mac:
        parts.append(f"mac={attachment.mac}")
    return ",".join(parts)


def format_launch_mount(mount: Mount) -> str:
    """Return the ``--mount`` value for *mount*."""
    if not mount.host_path or not mount.instance_path:
        raise ValidationError("mounts require both host_path and instance_path")
    spec = f"{mount.host_path}:{mount.instance_path}"
    if mount.read_only:
        spec += ":ro"
    return spec


def build_launch_args(opts: LaunchOptions, *, cloud_init_file: str = "") -> list[str]:
    """Return the ``launch`` argument vector for *opts*.

    *cloud_init_file* overrides ``opts.cloud_init_file``; it carries the
    temporary file holding inline cloud-init content. Network attachments
    without a name are left out.
    """
    args = ["launch"]
    if opts.name:
        args += ["--name", opts.name]
    if opts.image:
        args.append(opts.image)
    if opts.cpus > 0:
        args += ["--cpus", str(opts.cpus)]
    if opts.memory:
        args += ["--memory", opts.memory]
    if opts.disk:
        args += ["--disk", opts.disk]
    cloud_init = cloud_init_file or opts.cloud_init_file
    if cloud_init:
        args += ["--cloud-init", cloud_init]
    for attachment in opts.networks:
        if not attachment.name:
            continue
        args += ["--network", format_network(attachment)]
    for mount in opts.mounts:
        args += ["--mount", format_launch_mount(mount)]
    return args


def build_alias_args(alias: Alias) -> list[str]:
    """Return the ``alias`` argument vector for *alias*."""
    if not alias.name or not alias.instance or not alias.command:
        raise ValidationError("alias requires name, instance, and command")
    args = ["alias"]
    if alias.working_directory:
        args += ["--working-directory", alias.working_directory]
    args += [f"{alias.instance}:{alias.command}", alias.name]
    return args


def build_snapshot_args(instance: str, name: str = "", comment: str = "") -> list[str]:
    """Return the ``snapshot`` argument vector."""
    if not instance:
        raise ValidationError("instance name is required for snapshots")
    args = ["snapshot"]
    if name:
        args += ["--name", name]
    if comment:
        args += ["--comment", comment]
    args.append(instance)
    return args


def build_transfer_args(opts: TransferOptions) -> list[str]:
    """Return the ``transfer`` argument vector for *opts*."""
    if not opts.sources or not opts.destination:
        raise ValidationError("transfer requires at least one source and a destination")
    args = ["transfer"]
    if opts.recursive:
        args.append("--recursive")
    if opts.parents:
        args.append("--parents")
    args += [*opts.sources, opts.destination]
    return args


def resolve_binary(path: str) -> str:
    """Return the absolute path of the ``multipass`` executable."""
    resolved = shutil.which(path)
    if resolved is None:
        raise BinaryNotFoundError(f"multipass binary not found: {path}")
    return resolved


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------
class MultipassClient:
    """Execute ``multipass`` actions and return domain objects.

    A single client is safe to share between threads; its only shared state
    is the cache.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        cache: ReadThroughCache | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> None:
        """Wire the client to *executor* and an optional shared *cache*."""
        self.executor = executor
        self.cache = cache if cache is not None else ReadThroughCache(DEFAULT_CACHE_TTL)
        self._cancel = cancel

    @classmethod
    def create(
        cls,
        multipass_path: str = "multipass",
        *,
        timeout: float,
        cache_ttl: float = DEFAULT_CACHE_TTL,
    ) -> MultipassClient:
        """Locate the binary and build a client with a fresh cache."""
        executor = CommandExecutor(binary=resolve_binary(multipass_path), timeout=timeout)
        return cls(executor, ReadThroughCache(cache_ttl))

    def bound(self, cancel: threading.Event | None) -> MultipassClient:
        """Return a view sharing executor and cache that honours *cancel*."""
        clone = copy.copy(self)
        clone._cancel = cancel
        return clone

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def version(self) -> str:
        """Return the ``multipass`` client version string."""
        return parsers.parse_version(self._run_json(["version"]))

    def list_instances(self, *, refresh: bool = False) -> list[Instance]:
        """Return summary records for every instance."""
        return self.cache.get_or_refresh(
            ResourceKind.INSTANCES,
            lambda: parsers.parse_instance_list(self._run_json(["list"])),
            force_refresh=refresh,
        )

    def get_instance(self, name: str) -> Instance:
        """Return the detailed record for *name*.

        Raises :class:`NotFoundError` when the instance does not exist.
        """
        if not name:
            raise ValidationError("instance name is required")
        return parsers.parse_instance_info(self._run_json(["info", name]), name)

    def list_images(self, *, refresh: bool = False) -> list[Image]:
        """Return launchable images and blueprints."""
        return self.cache.get_or_refresh(
            ResourceKind.IMAGES,
            lambda: parsers.parse_images(self._run_json(["find"])),
            force_refresh=refresh,
        )

    def list_networks(self, *, refresh: bool = False) -> list[Network]:
        """Return host networks usable for bridged attachments."""
        return self.cache.get_or_refresh(
            ResourceKind.NETWORKS,
            lambda: parsers.parse_networks(self._run_json(["networks"])),
            force_refresh=refresh,
        )

    def list_aliases(self, *, refresh: bool = False) -> list[Alias]:
        """Return every alias across all contexts."""
        return self.cache.get_or_refresh(
            ResourceKind.ALIASES,
            lambda: parsers.parse_aliases(self._run_json(["aliases"])),
            force_refresh=refresh,
        )

    def list_snapshots(self, instance: str | None = None) -> list[Snapshot]:
        """Return snapshots, optionally limited to one instance."""
        return parsers.parse_snapshots(self._run_json(["list", "--snapshots"]), instance)

    # ------------------------------------------------------------------
    # Instance lifecycle
    # ------------------------------------------------------------------
    def launch_instance(self, opts: LaunchOptions) -> None:
        """Launch a new instance described by *opts*."""
        if opts.cloud_init and opts.cloud_init_file:
            raise ValidationError("cloud_init and cloud_init_file are mutually exclusive")
        try:
            if opts.cloud_init:
                self._launch_with_inline_cloud_init(opts)
            else:
                self._run(build_launch_args(opts))
        finally:
            self.cache.invalidate(ResourceKind.INSTANCES)

    def start_instance(self, name: str) -> None:
        """Start *name*."""
        self._run_instance_action("start", name)

    def stop_instance(self, name: str, *, cancel_delayed: bool = False) -> None:
        """Stop *name*; ``cancel_delayed`` cancels a pending delayed shutdown instead."""
        args = ["stop"]
        if cancel_delayed:
            args.append("--cancel")
        args.append(name)
        self._run_instance_action(*args)

    def suspend_instance(self, name: str) -> None:
        """Suspend *name*."""
        self._run_instance_action("suspend", name)

    def restart_instance(self, name: str) -> None:
        """Restart *name*."""
        self._run_instance_action("restart", name)

    def recover_instance(self, name: str) -> None:
        """Bring a soft-deleted instance back."""
        self._run_instance_action("recover", name)

    def delete_instance(self, name: str, *, purge: bool = False) -> None:
        """Delete *name*, then purge deleted instances when *purge* is set.

        A purge failure is raised even though the delete itself succeeded.
        """
        try:
            self._run(["delete", name])
        finally:
            self.cache.invalidate(ResourceKind.INSTANCES)
        if purge:
            self._run(["purge"])

    def set_primary(self, name: str) -> None:
        """Make *name* the primary instance."""
        if not name:
            raise ValidationError("name is required to set primary")
        self._run(["set", f"client.primary-name={name}"])

    def mount(self, name: str, mount: Mount) -> None:
        """Mount ``mount.host_path`` at ``mount.instance_path`` inside *name*."""
        if not mount.host_path or not mount.instance_path:
            raise ValidationError("mounts require both host_path and instance_path")
        self._run_instance_action("mount", mount.host_path, f"{name}:{mount.instance_path}")

    def unmount(self, name: str, mount: Mount | None = None) -> None:
        """Unmount one path, or every mount of *name* when *mount* is omitted."""
        target = name if mount is None else f"{name}:{mount.instance_path}"
        self._run_instance_action("umount", target)

    # ------------------------------------------------------------------
    # Aliases and snapshots
    # ------------------------------------------------------------------
    def create_alias(self, alias: Alias) -> None:
        """Create or redefine *alias*."""
        args = build_alias_args(alias)
        try:
            self._run(args)
        finally:
            self.cache.invalidate(ResourceKind.ALIASES)

    def delete_alias(self, name: str) -> None:
        """Remove the alias called *name*."""
        if not name:
            raise ValidationError("alias name is required")
        try:
            self._run(["unalias", name])
        finally:
            self.cache.invalidate(ResourceKind.ALIASES)

    def create_snapshot(self, instance: str, name: str = "", comment: str = "") -> str:
        """Snapshot *instance* and return the name ``multipass`` assigned."""
        output = self._run(build_snapshot_args(instance, name, comment))
        return parsers.parse_snapshot_name(output, name)

    def delete_snapshot(self, instance: str, name: str, *, purge: bool = True) -> None:
        """Delete the snapshot ``instance.name``."""
        if not instance or not name:
            raise ValidationError("instance and snapshot name are required")
        args = ["delete"]
        if purge:
            args.append("--purge")
        args.append(f"{instance}.{name}")
        self._run(args)

    # ------------------------------------------------------------------
    # Exec and transfer
    # ------------------------------------------------------------------
    def exec(self, instance: str, command: Sequence[str]) -> str:
        """Run *command* inside *instance* and return its stdout."""
        if not instance or not command:
            raise ValidationError("exec requires an instance and a command")
        return self._run(["exec", instance, "--", *command])

    def transfer(self, opts: TransferOptions) -> None:
        """Copy files between the host and an instance."""
        self._run(build_transfer_args(opts))

    def transfer_capture(self, source: str, *, recursive: bool = False) -> bytes:
        """Stream the remote *source* (``instance:path``) through stdout."""
        opts = TransferOptions(
            sources=[source],
            destination=CAPTURE_DESTINATION,
            recursive=recursive,
        )
        return self.executor.run_bytes(build_transfer_args(opts), cancel=self._cancel)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _launch_with_inline_cloud_init(self, opts: LaunchOptions) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix="mpassctl-cloud-init-", suffix=".yaml")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(opts.cloud_init)
            self._run(build_launch_args(opts, cloud_init_file=str(tmp_path)))
        finally:
            tmp_path.unlink(missing_ok=True)

    def _run_instance_action(self, *args: str) -> None:
        try:
            self._run(list(args))
        finally:
            self.cache.invalidate(ResourceKind.INSTANCES)

    def _run(self, args: Sequence[str]) -> str:
        return self.executor.run(args, cancel=self._cancel)

    def _run_json(self, args: Sequence[str]) -> object:
        return self.executor.run_json(args, cancel=self._cancel)


__all__ = [
    "CAPTURE_DESTINATION",
    "MultipassClient",
    "build_alias_args",
    "build_launch_args",
    "build_snapshot_args",
    "build_transfer_args",
    "format_launch_mount",
    "format_network",
    "resolve_binary",
]
