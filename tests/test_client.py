"""Tests for the multipass client facade and its argument builders."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest
from conftest import FakeExecutor, info_payload

from mpassctl.models import (
    Alias,
    InstanceState,
    LaunchOptions,
    Mount,
    NetworkAttachment,
    TransferOptions,
)
from mpassctl.multipass import (
    BinaryNotFoundError,
    ExternalToolError,
    MultipassClient,
    NotFoundError,
    ValidationError,
)
from mpassctl.multipass.client import (
    build_alias_args,
    build_launch_args,
    build_snapshot_args,
    build_transfer_args,
    format_network,
    resolve_binary,
)

LIST_PAYLOAD = {"list": [{"name": "web", "state": "Running", "ipv4": ["10.0.0.5"]}]}


def test_build_launch_args_is_deterministic() -> None:
    """Launch flags follow a fixed order."""
    opts = LaunchOptions(
        name="web",
        image="jammy",
        cpus=2,
        memory="2G",
        disk="10G",
        cloud_init_file="/tmp/user-data.yaml",
        networks=[NetworkAttachment(name="en0"), NetworkAttachment(name="br0", mode="manual")],
        mounts=[
            Mount(host_path="/home/me/src", instance_path="/srv/src"),
            Mount(host_path="/home/me/data", instance_path="/data", read_only=True),
        ],
    )

    expected = [
        "launch",
        "--name", "web",
        "jammy",
        "--cpus", "2",
        "--memory", "2G",
        "--disk", "10G",
        "--cloud-init", "/tmp/user-data.yaml",
        "--network", "en0",
        "--network", "name=br0,mode=manual",
        "--mount", "/home/me/src:/srv/src",
        "--mount", "/home/me/data:/data:ro",
    ]  # fmt: skip
    assert build_launch_args(opts) == expected
    assert build_launch_args(opts) == build_launch_args(opts)


def test_build_launch_args_skips_unset_options() -> None:
    """Zero CPUs and empty sizes produce no flags."""
    assert build_launch_args(LaunchOptions(name="", image="", cpus=0, memory="", disk="")) == [
        "launch"
    ]


def test_build_launch_args_omits_nameless_networks() -> None:
    """Attachments without a name are dropped from the launch vector."""
    opts = LaunchOptions(
        name="web",
        image="",
        networks=[NetworkAttachment(name="", mode="manual"), NetworkAttachment(name="br0")],
    )

    assert build_launch_args(opts) == [
        "launch", "--name", "web", "--network", "br0",
    ]  # fmt: skip


def test_format_network_variants() -> None:
    """A bare name is used unless mode or MAC are given."""
    assert format_network(NetworkAttachment(name="en0")) == "en0"
    assert (
        format_network(NetworkAttachment(name="en0", mode="auto", mac="52:54:00:00:00:01"))
        == "name=en0,mode=auto,mac=52:54:00:00:00:01"
    )
    with pytest.raises(ValidationError):
        format_network(NetworkAttachment(name=""))


def test_build_alias_and_snapshot_args() -> None:
    """Alias and snapshot vectors include only the options that are set."""
    assert build_alias_args(Alias(name="webls", instance="web", command="ls")) == [
        "alias",
        "web:ls",
        "webls",
    ]
    assert build_alias_args(
        Alias(name="webls", instance="web", command="ls", working_directory="map")
    ) == ["alias", "--working-directory", "map", "web:ls", "webls"]
    assert build_snapshot_args("web") == ["snapshot", "web"]
    assert build_snapshot_args("web", "s1", "before upgrade") == [
        "snapshot",
        "--name",
        "s1",
        "--comment",
        "before upgrade",
        "web",
    ]
    with pytest.raises(ValidationError):
        build_alias_args(Alias(name="x", instance="", command="ls"))


def test_build_transfer_args() -> None:
    """Transfer flags precede sources and destination."""
    opts = TransferOptions(
        sources=["/a", "/b"], destination="web:/tmp", recursive=True, parents=True
    )
    assert build_transfer_args(opts) == [
        "transfer", "--recursive", "--parents", "/a", "/b", "web:/tmp"
    ]  # fmt: skip
    with pytest.raises(ValidationError):
        build_transfer_args(TransferOptions(sources=[], destination="web:/tmp"))


def test_list_instances_uses_cache(client: MultipassClient, executor: FakeExecutor) -> None:
    """Repeated list calls inside the TTL hit multipass once."""
    executor.respond(["list"], LIST_PAYLOAD)

    first = client.list_instances()
    second = client.list_instances()

    assert first[0].name == second[0].name == "web"
    assert executor.commands("list") == [["list"]]

    client.list_instances(refresh=True)
    assert len(executor.commands("list")) == 2


def test_mutations_invalidate_instance_cache(
    client: MultipassClient,
    executor: FakeExecutor,
) -> None:
    """Lifecycle actions force the next list to query again."""
    executor.respond(["list"], LIST_PAYLOAD)

    client.list_instances()
    client.stop_instance("web")
    client.list_instances()

    assert len(executor.commands("list")) == 2
    assert executor.commands("stop") == [["stop", "web"]]


def test_failed_mutation_still_invalidates(
    client: MultipassClient,
    executor: FakeExecutor,
) -> None:
    """The cache is dropped even when the action fails."""
    executor.respond(["list"], LIST_PAYLOAD)
    executor.fail(["start", "web"], "start failed")

    client.list_instances()
    with pytest.raises(ExternalToolError):
        client.start_instance("web")
    client.list_instances()

    assert len(executor.commands("list")) == 2


def test_get_instance_parses_info(client: MultipassClient, executor: FakeExecutor) -> None:
    """``get_instance`` queries ``info`` for the name."""
    executor.respond(["info", "web"], info_payload("web", "Stopped"))

    instance = client.get_instance("web")

    assert instance.state is InstanceState.STOPPED
    assert executor.calls == [["info", "web"]]


def test_launch_with_inline_cloud_init_uses_temp_file(
    client: MultipassClient,
    executor: FakeExecutor,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Inline cloud-init is written to a temp file that is removed afterwards."""
    seen: dict[str, str] = {}

    def capture(args: list[str]) -> str:
        path = Path(args[args.index("--cloud-init") + 1])
        seen["path"] = str(path)
        seen["content"] = path.read_text(encoding="utf-8")
        return ""

    opts = LaunchOptions(name="web", image="lts", cloud_init="#cloud-config\npackages: [git]\n")
    monkeypatch.setattr(executor, "run", lambda args, *, cancel=None: capture(list(args)))

    client.launch_instance(opts)

    assert seen["content"] == "#cloud-config\npackages: [git]\n"
    assert not Path(seen["path"]).exists()


def test_launch_rejects_conflicting_cloud_init(client: MultipassClient) -> None:
    """Inline and file cloud-init cannot both be set."""
    opts = LaunchOptions(name="web", cloud_init="x", cloud_init_file="/tmp/y")
    with pytest.raises(ValidationError):
        client.launch_instance(opts)


def test_delete_with_purge(client: MultipassClient, executor: FakeExecutor) -> None:
    """Purge runs after delete and its failure propagates."""
    executor.fail(["purge"], "purge failed")

    with pytest.raises(ExternalToolError, match="purge failed"):
        client.delete_instance("web", purge=True)

    assert executor.calls == [["delete", "web"], ["purge"]]


def test_mount_and_unmount_arguments(client: MultipassClient, executor: FakeExecutor) -> None:
    """Live mounts use ``mount host instance:path``; unmount can target everything."""
    mount = Mount(host_path="/home/me/src", instance_path="/srv/src")

    client.mount("web", mount)
    client.unmount("web", mount)
    client.unmount("web")

    assert executor.calls == [
        ["mount", "/home/me/src", "web:/srv/src"],
        ["umount", "web:/srv/src"],
        ["umount", "web"],
    ]


def test_snapshot_lifecycle(client: MultipassClient, executor: FakeExecutor) -> None:
    """The assigned snapshot name is parsed from the command output."""
    executor.respond(["snapshot", "web"], "Snapshot taken: web.snapshot3\n")

    assert client.create_snapshot("web") == "snapshot3"
    client.delete_snapshot("web", "snapshot3")

    assert executor.calls[-1] == ["delete", "--purge", "web.snapshot3"]


def test_alias_mutations_invalidate_alias_cache(
    client: MultipassClient,
    executor: FakeExecutor,
) -> None:
    """Creating or removing an alias drops the alias slot."""
    executor.respond(["aliases"], {"contexts": {"default": {}}})

    client.list_aliases()
    client.create_alias(Alias(name="webls", instance="web", command="ls"))
    client.list_aliases()
    client.delete_alias("webls")
    client.list_aliases()

    assert len(executor.commands("aliases")) == 3
    assert executor.commands("unalias") == [["unalias", "webls"]]


def test_exec_and_transfer_capture(client: MultipassClient, executor: FakeExecutor) -> None:
    """Exec separates the command with ``--``; capture streams to stdout."""
    executor.respond(["transfer", "web:/etc/hostname", "-"], b"web\n")

    client.exec("web", ["rm", "-rf", "--", "/tmp/x"])
    data = client.transfer_capture("web:/etc/hostname")

    assert executor.calls[0] == ["exec", "web", "--", "rm", "-rf", "--", "/tmp/x"]
    assert data == b"web\n"


def test_not_found_propagates(client: MultipassClient, executor: FakeExecutor) -> None:
    """Not-found errors reach the caller unchanged."""
    executor.missing(["info", "ghost"], 'instance "ghost" does not exist')

    with pytest.raises(NotFoundError):
        client.get_instance("ghost")


def test_bound_client_shares_cache(client: MultipassClient, executor: FakeExecutor) -> None:
    """A bound view reuses the cache of its parent."""
    executor.respond(["list"], LIST_PAYLOAD)
    cancel = threading.Event()

    client.list_instances()
    view = client.bound(cancel)
    view.list_instances()

    assert view.cache is client.cache
    assert len(executor.commands("list")) == 1


def test_resolve_binary_missing(tmp_path: Path) -> None:
    """Unknown binaries raise :class:`BinaryNotFoundError`."""
    with pytest.raises(BinaryNotFoundError):
        resolve_binary(str(tmp_path / "nope"))
