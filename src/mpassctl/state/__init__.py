"""State management helpers for mpassctl."""

from .registry import RESOURCE_KINDS, StateRegistry, StateRegistryError

__all__ = ["RESOURCE_KINDS", "StateRegistry", "StateRegistryError"]
