"""Run the ``multipass`` binary and classify its failures."""
from __future__ import annotations

import json
import logging
import subprocess
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass

from .errors import (
    BinaryNotFoundError,
    CommandCancelledError,
    CommandTimeoutError,
    ExternalToolError,
    MalformedOutputError,
    NotFoundError,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
JSON_FORMAT_ARGS = ("--format", "json")
NOT_FOUND_MARKERS = ("does not exist", "not found")


@dataclass(slots=True)
class CommandExecutor:
    """Invoke ``multipass`` with a bounded runtime.

    Callers that need to abort a command early pass a :class:`threading.Event`
    as ``cancel``; the running process is killed once the event is set.
    """

    binary: str = "multipass"
    timeout: float = DEFAULT_TIMEOUT
    poll_interval: float = 0.1

    def run(self, args: Sequence[str], *, cancel: threading.Event | None = None) -> str:
        """Run ``multipass *args`` and return its decoded stdout."""
        return self.run_bytes(args, cancel=cancel).decode("utf-8", errors="replace")

    def run_bytes(
        self,
        args: Sequence[str],
        *,
        cancel: threading.Event | None = None,
    ) -> bytes:
        """Run ``multipass *args`` and return its raw stdout."""
        argv = [str(arg) for arg in args]
        LOGGER.debug("Running %s %s", self.binary, " ".join(argv))
        result = self._spawn(argv, cancel)
        if result.returncode == 0:
            return result.stdout

        stdout = result.stdout.decode("utf-8", errors="replace").strip()
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        if any(marker in stderr for marker in NOT_FOUND_MARKERS):
            raise NotFoundError(f"not found: {stderr}", stderr=stderr)
        raise ExternalToolError(
            argv,
            returncode=result.returncode,
            stdout=stdout,
            stderr=stderr,
        )

    def run_json(
        self,
        args: Sequence[str],
        *,
        cancel: threading.Event | None = None,
    ) -> object:
        """Run a query with ``--format json`` appended and decode the payload."""
        argv = [*args, *JSON_FORMAT_ARGS]
        output = self.run(argv, cancel=cancel)
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise MalformedOutputError(
                f"unable to parse multipass JSON output for {' '.join(argv)!r}: {exc}"
            ) from exc

    def _spawn(
        self,
        argv: list[str],
        cancel: threading.Event | None,
    ) -> subprocess.CompletedProcess[bytes]:
        if cancel is not None and cancel.is_set():
            raise CommandCancelledError(argv)

        command = [self.binary, *argv]
        try:
            process = subprocess.Popen(  # noqa: S603
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise BinaryNotFoundError(f"{self.binary} not found: {exc}") from exc

        deadline = time.monotonic() + self.timeout
        while True:
            if cancel is not None and cancel.is_set():
                _kill(process)
                raise CommandCancelledError(argv)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                _kill(process)
                raise CommandTimeoutError(argv, self.timeout)
            wait = remaining if cancel is None else min(remaining, self.poll_interval)
            try:
                stdout, stderr = process.communicate(timeout=wait)
            except subprocess.TimeoutExpired:
                continue
            return subprocess.CompletedProcess(command, process.returncode, stdout, stderr)


def _kill(process: subprocess.Popen[bytes]) -> None:
    process.kill()
    process.communicate()


__all__ = ["CommandExecutor", "DEFAULT_TIMEOUT", "JSON_FORMAT_ARGS", "NOT_FOUND_MARKERS"]
