"""Tests for planning and applying instance changes."""
from __future__ import annotations

import pytest
from conftest import FakeExecutor, info_payload

from mpassctl.models import Mount, NetworkAttachment
from mpassctl.multipass import NotFoundError, ValidationError
from mpassctl.reconcile import (
    Diagnostics,
    InstanceHandler,
    InstanceRecord,
    InstanceSpec,
    PlannedChange,
    ReconcileContext,
    Transition,
)
from mpassctl.reconcile.instance import diff_mounts, resolve_image

HANDLER = InstanceHandler()


def _record(**overrides: object) -> InstanceRecord:
    spec = InstanceSpec(name="web", image="jammy")
    for key, value in overrides.items():
        setattr(spec, key, value)
    return InstanceRecord(spec=spec, state="Running")


def _missing(name: str = "web") -> NotFoundError:
    return NotFoundError(f'instance "{name}" does not exist')


def test_spec_defaults_apply_only_to_absent_keys() -> None:
    """Omitted sizing keys default; empty ones stay empty."""
    spec = InstanceSpec.from_dict({"name": "web"})
    assert (spec.cpus, spec.memory, spec.disk) == (1, "1G", "5G")

    blank = InstanceSpec.from_dict({"name": "web", "memory": "", "disk": None})
    assert blank.memory == ""
    assert blank.disk == ""


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"name": ""}, "name is required"),
        ({"cloud_init": "x", "cloud_init_file": "/tmp/y"}, "Conflicting cloud-init"),
        ({"cpus": 0}, "cpus must be at least 1"),
        ({"memory": "2GB"}, "memory must be"),
        ({"disk": "10"}, "disk must be"),
        ({"networks": [NetworkAttachment(name="")]}, "network attachments"),
        ({"mounts": [Mount(host_path="", instance_path="/srv")]}, "mounts require"),
    ],
)
def test_validate_rejects_bad_specs(overrides: dict[str, object], message: str) -> None:
    """Invalid specs raise before any command runs."""
    spec = InstanceSpec(name="web")
    for key, value in overrides.items():
        setattr(spec, key, value)
    with pytest.raises(ValidationError, match=message):
        HANDLER.validate(spec)


def test_resolve_image_precedence() -> None:
    """Explicit image wins over the default, which wins over ``lts``."""
    assert resolve_image("jammy", "noble") == "jammy"
    assert resolve_image("", "noble") == "noble"
    assert resolve_image("") == "lts"


def test_plan_replace_on_immutable_changes() -> None:
    """Sizing, image and network changes force a replacement."""
    spec = InstanceSpec(name="web", image="noble", cpus=2, networks=[NetworkAttachment("en0")])

    change = HANDLER.plan(spec, _record())

    assert change.transition is Transition.REPLACE
    assert change.reasons == ("image", "cpus", "networks")


def test_plan_ignores_unknown_recorded_attributes() -> None:
    """Empty recorded image or sizes (after an import) are not compared."""
    record = _record(image="", memory="", disk="")
    spec = InstanceSpec(name="web", image="noble", memory="4G", disk="20G")

    assert HANDLER.plan(spec, record).transition is Transition.NOOP


def test_plan_update_for_mutable_changes() -> None:
    """Primary and mounts are updated in place."""
    spec = InstanceSpec(
        name="web",
        image="jammy",
        primary=True,
        mounts=[Mount("/src", "/srv/src")],
    )

    change = HANDLER.plan(spec, _record())

    assert change.transition is Transition.UPDATE
    assert change.reasons == ("primary", "mounts")


def test_plan_noop_and_create() -> None:
    """Matching specs plan nothing; untracked specs plan a create."""
    assert HANDLER.plan(InstanceSpec(name="web", image="jammy"), _record()).transition is (
        Transition.NOOP
    )
    assert HANDLER.plan(InstanceSpec(name="web"), None).transition is Transition.CREATE


def test_diff_mounts_read_only_change() -> None:
    """Flipping read-only removes and re-adds the same pair."""
    current = [Mount("/src", "/srv/src"), Mount("/old", "/srv/old")]
    desired = [Mount("/src", "/srv/src", read_only=True), Mount("/new", "/srv/new")]

    diff = diff_mounts(desired, current)

    assert diff.to_remove == [Mount("/src", "/srv/src"), Mount("/old", "/srv/old")]
    assert diff.to_add == [Mount("/src", "/srv/src", read_only=True), Mount("/new", "/srv/new")]
    assert not diff_mounts(current, list(reversed(current)))


def test_create_launches_and_reads_back(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """Create launches with resolved defaults and records computed state."""
    executor.respond(["info", "web"], info_payload("web", ipv4=["10.0.0.9"]))

    result = HANDLER.apply(
        ctx, PlannedChange(Transition.CREATE), InstanceSpec(name="web"), None
    )

    assert not result.diagnostics.has_errors
    assert executor.calls[0] == [
        "launch", "--name", "web", "lts", "--cpus", "1", "--memory", "1G", "--disk", "5G"
    ]  # fmt: skip
    assert result.record is not None
    assert result.record.spec.image == "lts"
    assert result.record.state == "Running"
    assert result.record.ipv4 == ["10.0.0.9"]


def test_create_uses_configured_default_image(
    executor: FakeExecutor,
    ctx: ReconcileContext,
) -> None:
    """The provider default image is used when the spec has none."""
    executor.respond(["info", "web"], info_payload("web"))
    ctx.default_image = "noble"

    result = HANDLER.apply(ctx, PlannedChange(Transition.CREATE), InstanceSpec(name="web"), None)

    assert result.record is not None
    assert result.record.spec.image == "noble"
    assert executor.calls[0][3] == "noble"


def test_create_primary_failure_is_warning(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """Failing to set primary does not fail the create."""
    executor.fail(["set", "client.primary-name=web"], "permission denied")
    executor.respond(["info", "web"], info_payload("web"))

    result = HANDLER.apply(
        ctx, PlannedChange(Transition.CREATE), InstanceSpec(name="web", primary=True), None
    )

    assert not result.diagnostics.has_errors
    assert [item.summary for item in result.diagnostics.warnings] == ["Failed to set primary"]
    assert result.record is not None


def test_create_launch_failure_is_error(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """A failed launch leaves nothing tracked and records an error."""
    executor.fail(
        ["launch", "--name", "web", "lts", "--cpus", "1", "--memory", "1G", "--disk", "5G"],
        "launch failed: image not found",
    )

    result = HANDLER.apply(ctx, PlannedChange(Transition.CREATE), InstanceSpec(name="web"), None)

    assert result.record is None
    assert result.diagnostics.errors[0].summary == "Failed to create instance"


def test_validation_error_becomes_diagnostic(ctx: ReconcileContext) -> None:
    """Validation errors surface as error diagnostics."""
    result = HANDLER.apply(
        ctx, PlannedChange(Transition.CREATE), InstanceSpec(name="web", cpus=0), None
    )

    assert result.diagnostics.has_errors


def test_read_missing_without_recover(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """A missing instance drops out of tracking."""
    executor.respond(["info", "web"], _missing())

    assert HANDLER.read(ctx, _record(), Diagnostics()) is None
    assert executor.commands("recover") == []


def test_read_recovers_and_starts(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """A missing instance is recovered and started when configured."""
    executor.respond(
        ["info", "web"],
        _missing(),
        info_payload("web", "Stopped"),
        info_payload("web", "Running"),
    )
    record = _record(auto_recover=True, auto_start_on_recover=True)

    refreshed = HANDLER.read(ctx, record, Diagnostics())

    assert refreshed is not None
    assert refreshed.state == "Running"
    assert executor.commands("recover") == [["recover", "web"]]
    assert executor.commands("start") == [["start", "web"]]


def test_read_recover_failure_warns(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """If recovery fails the record is dropped with a warning."""
    executor.respond(["info", "web"], _missing())
    executor.fail(["recover", "web"], "cannot recover")
    diags = Diagnostics()

    assert HANDLER.read(ctx, _record(auto_recover=True), diags) is None
    assert [item.summary for item in diags.warnings] == ["Failed to auto-recover instance"]


def test_read_recovers_soft_deleted(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """A soft-deleted instance is recovered but left stopped without auto-start."""
    executor.respond(
        ["info", "web"], info_payload("web", "Deleted"), info_payload("web", "Stopped")
    )

    refreshed = HANDLER.read(ctx, _record(auto_recover=True), Diagnostics())

    assert refreshed is not None
    assert refreshed.state == "Stopped"
    assert executor.commands("start") == []


def test_read_soft_deleted_without_recover(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """Without auto-recover the deleted state is reported as is."""
    executor.respond(["info", "web"], info_payload("web", "Deleted"))

    refreshed = HANDLER.read(ctx, _record(), Diagnostics())

    assert refreshed is not None
    assert refreshed.state == "Deleted"


def test_update_remounts(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """Changing mounts unmounts everything and mounts the desired set."""
    executor.respond(["info", "web"], info_payload("web"))
    record = _record(mounts=[Mount("/old", "/srv/old")])
    spec = InstanceSpec(name="web", image="jammy", mounts=[Mount("/new", "/srv/new")])
    change = HANDLER.plan(spec, record)

    result = HANDLER.apply(ctx, change, spec, record)

    assert change.transition is Transition.UPDATE
    assert not result.diagnostics.has_errors
    assert executor.calls[:2] == [["umount", "web"], ["mount", "/new", "web:/srv/new"]]
    assert result.record is not None
    assert result.record.spec.mounts == [Mount("/new", "/srv/new")]


def test_update_sets_primary(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """Turning primary on issues ``set``."""
    executor.respond(["info", "web"], info_payload("web"))
    spec = InstanceSpec(name="web", image="jammy", primary=True)

    HANDLER.apply(ctx, PlannedChange(Transition.UPDATE, ("primary",)), spec, _record())

    assert executor.commands("set") == [["set", "client.primary-name=web"]]


def test_delete_missing_is_ok(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """Deleting an already deleted instance succeeds."""
    executor.respond(["delete", "web"], _missing())

    result = HANDLER.apply(ctx, PlannedChange(Transition.DELETE), None, _record())

    assert result.record is None
    assert not result.diagnostics.has_errors


def test_delete_purge_failure_is_error(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """A purge failure keeps the record and reports an error."""
    executor.fail(["purge"], "purge failed")
    record = _record()

    result = HANDLER.apply(ctx, PlannedChange(Transition.DELETE), None, record)

    assert result.record is record
    assert result.diagnostics.errors[0].summary == "Failed to delete instance"


def test_replace_deletes_then_creates(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """Replacement removes the old instance before launching."""
    executor.respond(["info", "web"], info_payload("web"))
    spec = InstanceSpec(name="web", image="noble")

    result = HANDLER.apply(ctx, HANDLER.plan(spec, _record()), spec, _record())

    assert [call[0] for call in executor.calls[:3]] == ["delete", "purge", "launch"]
    assert result.record is not None
    assert result.record.spec.image == "noble"


def test_import_uses_live_attributes(ctx: ReconcileContext, executor: FakeExecutor) -> None:
    """Imported instances carry CPUs and mounts but leave image and sizes unknown."""
    executor.respond(
        ["info", "web"],
        info_payload(
            "web",
            cpu_count="2",
            mounts={"/srv/src": {"source_path": "/home/me/src", "readonly": False}},
        ),
    )

    record = HANDLER.import_record(ctx, "web")

    assert record is not None
    assert record.spec.cpus == 2
    assert record.spec.image == ""
    assert record.spec.memory == ""
    assert record.spec.mounts == [Mount("/home/me/src", "/srv/src")]


def test_record_round_trip() -> None:
    """Records survive serialisation to the registry."""
    record = _record(mounts=[Mount("/a", "/b", read_only=True)])
    restored = InstanceRecord.from_dict(record.to_dict())

    assert restored.spec == record.spec
    assert restored.state == "Running"
