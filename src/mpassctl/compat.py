"""Version floor checks for the ``multipass`` client."""
from __future__ import annotations

from packaging.version import InvalidVersion, Version

MINIMUM_VERSION = "1.13.0"


class UnsupportedVersionError(RuntimeError):
    """Raised when the installed ``multipass`` is unusable or too old."""


def parse_client_version(raw: str) -> Version:
    """Parse a ``multipass`` version string such as ``1.14.1+mac``."""
    token = raw.strip().split()[0] if raw.strip() else ""
    try:
        return Version(token)
    except InvalidVersion as exc:
        raise UnsupportedVersionError(f"Cannot parse multipass version {raw!r}.") from exc


def check_version(raw: str, minimum: str = MINIMUM_VERSION) -> Version:
    """Return the parsed version, raising when it is below *minimum*."""
    version = parse_client_version(raw)
    try:
        floor = Version(minimum)
    except InvalidVersion as exc:
        raise UnsupportedVersionError(f"Invalid minimum version {minimum!r}.") from exc
    if Version(version.base_version) < floor:
        raise UnsupportedVersionError(
            f"multipass {raw} is older than the supported minimum {minimum}."
        )
    return version


__all__ = ["MINIMUM_VERSION", "UnsupportedVersionError", "check_version", "parse_client_version"]
