"""Short-lived read-through cache for ``multipass`` list queries."""
from __future__ import annotations

import copy
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import TypeVar

from cachetools import TTLCache

DEFAULT_CACHE_TTL = 3.0

T = TypeVar("T")


class ResourceKind(str, Enum):
    """Kinds of list results that get their own cache slot."""

    INSTANCES = "instances"
    IMAGES = "images"
    NETWORKS = "networks"
    ALIASES = "aliases"


class ReadThroughCache:
    """One slot per :class:`ResourceKind`, guarded by a single lock.

    Slots live in a :class:`cachetools.TTLCache`, so an entry is served while
    the clock is strictly before its expiry. A slot is read with one indexed
    lookup, never a membership test followed by a read, since the clock may
    pass the expiry between the two. The lock covers only that lookup and the
    slot store. The loader runs unlocked, so two concurrent misses may both
    query ``multipass``; the later store wins. Callers always receive a deep
    copy of the cached value.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_CACHE_TTL,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create an empty cache whose entries live for *ttl* seconds."""
        self.ttl = ttl
        self._lock = threading.Lock()
        self._entries: TTLCache[ResourceKind, object] = TTLCache(
            maxsize=len(ResourceKind),
            ttl=ttl,
            timer=clock,
        )

    def get_or_refresh(
        self,
        kind: ResourceKind,
        loader: Callable[[], T],
        *,
        force_refresh: bool = False,
    ) -> T:
        """Return the cached value for *kind*, calling *loader* on a miss."""
        if not force_refresh:
            with self._lock:
                try:
                    cached = self._entries[kind]
                except KeyError:
                    pass
                else:
                    return copy.deepcopy(cached)  # type: ignore[return-value]

        value = loader()

        with self._lock:
            self._entries[kind] = value
        return copy.deepcopy(value)

    def invalidate(self, kind: ResourceKind) -> None:
        """Drop the slot for *kind* so the next read queries again."""
        with self._lock:
            self._entries.pop(kind, None)

    def invalidate_all(self) -> None:
        """Drop every slot."""
        with self._lock:
            self._entries.clear()


__all__ = ["DEFAULT_CACHE_TTL", "ReadThroughCache", "ResourceKind"]
