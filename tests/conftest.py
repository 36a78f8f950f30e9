"""Shared fixtures: a scripted stand-in for the multipass executor."""

from __future__ import annotations

from collections import deque
from collections.abc import Sequence

import pytest

from mpassctl.multipass import (
    ExternalToolError,
    MultipassClient,
    NotFoundError,
    ReadThroughCache,
)
from mpassctl.reconcile import ReconcileContext

Response = object


class FakeExecutor:
    """Record argument vectors and replay scripted responses.

    A response may be a value, an exception instance (raised), or a callable
    receiving the argument list. Several responses for the same command are
    consumed in order; the last one repeats.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self._responses: dict[tuple[str, ...], deque[Response]] = {}

    def respond(self, args: Sequence[str], *results: Response) -> None:
        self._responses[tuple(args)] = deque(results)

    def fail(self, args: Sequence[str], stderr: str, *, returncode: int = 1) -> None:
        self.respond(args, ExternalToolError(list(args), returncode=returncode, stderr=stderr))

    def missing(self, args: Sequence[str], stderr: str = "does not exist") -> None:
        self.respond(args, NotFoundError(f"not found: {stderr}", stderr=stderr))

    def commands(self, verb: str) -> list[list[str]]:
        return [call for call in self.calls if call and call[0] == verb]

    def _next(self, args: Sequence[str]) -> Response:
        self.calls.append(list(args))
        queue = self._responses.get(tuple(args))
        if not queue:
            return None
        value = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            return value(list(args))
        return value

    def run(self, args: Sequence[str], *, cancel: object = None) -> str:
        value = self._next(args)
        return "" if value is None else str(value)

    def run_bytes(self, args: Sequence[str], *, cancel: object = None) -> bytes:
        value = self._next(args)
        return value if isinstance(value, bytes) else b""

    def run_json(self, args: Sequence[str], *, cancel: object = None) -> object:
        return self._next(args)


def info_payload(name: str, state: str = "Running", **fields: object) -> dict[str, object]:
    """Return a ``multipass info`` payload for a single instance."""
    entry: dict[str, object] = {
        "state": state,
        "release": "Ubuntu 22.04.4 LTS",
        "image_release": "22.04 LTS",
        "cpu_count": "1",
        "ipv4": ["10.0.0.5"] if state == "Running" else [],
        "memory": {"total": 1073741824, "used": 0},
        "disks": {"sda1": {"total": "5368709120", "used": "0"}},
        "mounts": {},
        "snapshot_count": "0",
    }
    entry.update(fields)
    return {"errors": [], "info": {name: entry}}


@pytest.fixture()
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def client(executor: FakeExecutor) -> MultipassClient:
    return MultipassClient(executor, ReadThroughCache(60.0))  # type: ignore[arg-type]


@pytest.fixture()
def ctx(client: MultipassClient) -> ReconcileContext:
    return ReconcileContext(client=client)
