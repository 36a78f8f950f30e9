"""Tests for planning and applying a whole manifest."""
from __future__ import annotations

import copy

import pytest
from conftest import FakeExecutor, info_payload

from mpassctl.engine import (
    apply_plan,
    build_plan,
    empty_resources,
    refresh_resources,
)
from mpassctl.manifest import Manifest, ManifestError
from mpassctl.reconcile import (
    AliasSpec,
    InstanceRecord,
    InstanceSpec,
    ReconcileContext,
    SnapshotSpec,
    Transition,
)

LAUNCH_WEB = ["launch", "--name", "web", "lts", "--cpus", "1", "--memory", "1G", "--disk", "5G"]


def _tracked() -> dict[str, dict[str, dict[str, object]]]:
    resources = empty_resources()
    resources["instances"]["db"] = InstanceRecord(spec=InstanceSpec(name="db")).to_dict()
    resources["snapshots"]["web.s1"] = {"instance": "web", "name": "s1"}
    resources["aliases"]["old"] = {"name": "old", "instance": "db", "command": "ls"}
    return resources


def test_plan_orders_removals_before_changes() -> None:
    """Stale resources are removed in reverse dependency order first."""
    manifest = Manifest(instances=[InstanceSpec(name="web")])

    plan = build_plan(manifest, _tracked())

    assert [(entry.kind, entry.key, entry.transition) for entry in plan] == [
        ("aliases", "old", Transition.DELETE),
        ("snapshots", "web.s1", Transition.DELETE),
        ("instances", "db", Transition.DELETE),
        ("instances", "web", Transition.CREATE),
    ]
    assert plan[-1].to_dict() == {
        "kind": "instances",
        "key": "web",
        "action": "create",
        "reasons": [],
    }


def test_plan_includes_noop_entries() -> None:
    """Unchanged resources appear as NOOP."""
    resources = _tracked()
    manifest = Manifest(aliases=[AliasSpec("old", "db", "ls")])

    plan = build_plan(manifest, resources)

    assert ("aliases", "old", Transition.NOOP) in [
        (entry.kind, entry.key, entry.transition) for entry in plan
    ]


def test_plan_rejects_duplicates() -> None:
    """Two specs with the same identity are refused."""
    manifest = Manifest(snapshots=[SnapshotSpec("web", "a"), SnapshotSpec("web", "a")])

    with pytest.raises(ManifestError, match="Duplicate snapshot 'web.a'"):
        build_plan(manifest, empty_resources())


def test_apply_persists_after_each_entry(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """Resources are updated and persisted as each entry completes."""
    executor.respond(["info", "web"], info_payload("web"))
    resources = _tracked()
    saved: list[dict[str, dict[str, dict[str, object]]]] = []
    plan = build_plan(Manifest(instances=[InstanceSpec(name="web")]), resources)

    summary = apply_plan(
        ctx, plan, resources, persist=lambda data: saved.append(copy.deepcopy(data))
    )

    assert summary.changed == 4
    assert summary.failed == 0
    assert [call[0] for call in executor.calls] == [
        "unalias", "delete", "delete", "purge", "launch", "info"
    ]  # fmt: skip
    assert len(saved) == 4
    assert "old" not in saved[0]["aliases"]
    assert "web.s1" in saved[0]["snapshots"]
    assert list(resources["instances"]) == ["web"]
    assert resources["snapshots"] == {}


def test_apply_counts_failures(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """A failed entry is counted and leaves tracking unchanged."""
    executor.fail(LAUNCH_WEB, "launch failed")
    resources = empty_resources()
    plan = build_plan(Manifest(instances=[InstanceSpec(name="web")]), resources)

    summary = apply_plan(ctx, plan, resources)

    assert summary.failed == 1
    assert summary.changed == 0
    assert summary.diagnostics.has_errors
    assert resources["instances"] == {}


def test_refresh_drops_missing_records(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """Records whose resource vanished stop being tracked."""
    executor.missing(["info", "db"])
    executor.respond(["list", "--snapshots"], {"info": {"web": {"s1": {"comment": "kept"}}}})
    executor.respond(
        ["aliases"],
        {"contexts": {"default": {"old": {"instance": "db", "command": "ls -l"}}}},
    )
    resources = _tracked()

    diags = refresh_resources(ctx, resources)

    assert not diags.has_errors
    assert resources["instances"] == {}
    assert resources["snapshots"]["web.s1"]["comment"] == "kept"
    assert resources["aliases"]["old"]["command"] == "ls -l"
