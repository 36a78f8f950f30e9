"""Loose readers for records loaded back from YAML."""
from __future__ import annotations

from collections.abc import Mapping, Sequence


def as_str(value: object, default: str = "") -> str:
    """Return *value* as a string, using *default* for ``None``."""
    return default if value is None else str(value)


def as_int(value: object, default: int = 0) -> int:
    """Return *value* as an integer, using *default* when it is not numeric."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return default


def as_strings(value: object) -> list[str]:
    """Return a list of strings from a YAML sequence."""
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        return []
    return [str(item) for item in value]


def as_mappings(value: object) -> list[Mapping[str, object]]:
    """Return the mapping entries of a YAML sequence."""
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        return []
    return [item for item in value if isinstance(item, Mapping)]


def as_str_map(value: object) -> dict[str, str]:
    """Return a ``str -> str`` mapping from a YAML mapping."""
    if not isinstance(value, Mapping):
        return {}
    return {str(key): as_str(item) for key, item in value.items()}


__all__ = ["as_int", "as_mappings", "as_str", "as_str_map", "as_strings"]
