"""Tests for version checks and provider wiring."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeExecutor
from packaging.version import Version

from mpassctl.compat import UnsupportedVersionError, check_version, parse_client_version
from mpassctl.config import AppConfig, load_config
from mpassctl.multipass import MultipassClient
from mpassctl.provider import configure_provider


def _config(tmp_path: Path, **overrides: object) -> AppConfig:
    return load_config(tmp_path / "missing.yml", env={}, overrides=overrides)


def test_parse_client_version() -> None:
    """Platform suffixes and trailing text are tolerated."""
    assert parse_client_version("1.14.1+mac") == Version("1.14.1+mac")
    assert parse_client_version("1.13.0 (build)").base_version == "1.13.0"
    with pytest.raises(UnsupportedVersionError):
        parse_client_version("")
    with pytest.raises(UnsupportedVersionError):
        parse_client_version("not-a-version")


def test_check_version_floor() -> None:
    """Versions below the floor are rejected, local suffixes ignored."""
    assert check_version("1.13.0+win").base_version == "1.13.0"
    with pytest.raises(UnsupportedVersionError, match="older than"):
        check_version("1.12.2+mac")


def test_configure_provider_builds_context(
    tmp_path: Path,
    executor: FakeExecutor,
    client: MultipassClient,
) -> None:
    """Config values flow into the context; a supported version is silent."""
    executor.respond(["version"], {"multipass": "1.14.1+mac", "multipassd": "1.14.1+mac"})
    config = _config(tmp_path, default_image="noble", download={"strategy": "archive"})

    ctx, diags = configure_provider(config, client=client)

    assert ctx.client is client
    assert ctx.default_image == "noble"
    assert ctx.download_strategy == "archive"
    assert len(diags) == 0


def test_configure_provider_version_warnings(
    tmp_path: Path,
    executor: FakeExecutor,
    client: MultipassClient,
) -> None:
    """Old or unreadable versions only warn."""
    config = _config(tmp_path)
    executor.respond(["version"], {"multipass": "1.10.0"})
    _, old = configure_provider(config, client=client)
    executor.fail(["version"], "daemon not running")
    _, broken = configure_provider(config, client=client)

    assert [item.summary for item in old.warnings] == ["Unsupported multipass version"]
    assert [item.summary for item in broken.warnings] == ["Unable to determine multipass version"]
    assert not old.has_errors
    assert not broken.has_errors
