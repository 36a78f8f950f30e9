"""Tests for the subprocess executor, using the running interpreter as the binary."""
from __future__ import annotations

import sys
import threading
import time

import pytest

from mpassctl.multipass import (
    BinaryNotFoundError,
    CommandCancelledError,
    CommandExecutor,
    CommandTimeoutError,
    ExternalToolError,
    MalformedOutputError,
    NotFoundError,
)


def _executor(timeout: float = 10.0) -> CommandExecutor:
    return CommandExecutor(binary=sys.executable, timeout=timeout, poll_interval=0.05)


def test_run_returns_stdout() -> None:
    """Successful commands return their stdout."""
    assert _executor().run(["-c", "print('hello')"]).strip() == "hello"


def test_run_bytes_keeps_binary_output() -> None:
    """Raw output is returned without decoding."""
    script = "import sys; sys.stdout.buffer.write(bytes([0, 159, 255]))"
    assert _executor().run_bytes(["-c", script]) == bytes([0, 159, 255])


def test_run_json_appends_format_flags() -> None:
    """``run_json`` passes ``--format json`` and decodes the payload."""
    script = "import json, sys; print(json.dumps({'argv': sys.argv[1:]}))"
    assert _executor().run_json(["-c", script]) == {"argv": ["--format", "json"]}


def test_run_json_rejects_invalid_output() -> None:
    """Non-JSON output surfaces as a malformed-output error."""
    with pytest.raises(MalformedOutputError):
        _executor().run_json(["-c", "print('not json')"])


def test_nonzero_exit_includes_stderr() -> None:
    """A failing command reports its exit code and stderr."""
    script = "import sys; sys.stderr.write('launch failed: no space\\n'); sys.exit(3)"
    with pytest.raises(ExternalToolError) as excinfo:
        _executor().run(["-c", script])

    assert excinfo.value.returncode == 3
    assert "launch failed: no space" in str(excinfo.value)


def test_nonzero_exit_falls_back_to_stdout() -> None:
    """Without stderr the message carries stdout instead."""
    with pytest.raises(ExternalToolError, match="only stdout"):
        _executor().run(["-c", "import sys; print('only stdout'); sys.exit(1)"])


@pytest.mark.parametrize(
    "message",
    ['instance "web" does not exist', "snapshot web.snap1 not found"],
)
def test_not_found_markers_are_classified(message: str) -> None:
    """Missing-entity messages on stderr raise :class:`NotFoundError`."""
    script = f"import sys; sys.stderr.write({message!r}); sys.exit(2)"
    with pytest.raises(NotFoundError) as excinfo:
        _executor().run(["-c", script])

    assert excinfo.value.stderr == message


def test_timeout_kills_the_process() -> None:
    """Commands exceeding the timeout are killed and reported."""
    started = time.monotonic()
    with pytest.raises(CommandTimeoutError) as excinfo:
        _executor(timeout=0.5).run(["-c", "import time; time.sleep(30)"])

    assert not isinstance(excinfo.value, CommandCancelledError)
    assert excinfo.value.timeout == 0.5
    assert time.monotonic() - started < 10


def test_cancel_event_aborts_running_command() -> None:
    """Setting the cancel event stops a running command."""
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(CommandCancelledError):
            _executor(timeout=30).run(["-c", "import time; time.sleep(30)"], cancel=cancel)
    finally:
        timer.cancel()
    assert time.monotonic() - started < 10


def test_already_cancelled_does_not_spawn() -> None:
    """A pre-set cancel event fails before the process starts."""
    cancel = threading.Event()
    cancel.set()
    executor = CommandExecutor(binary="/nonexistent/multipass")

    with pytest.raises(CommandCancelledError):
        executor.run(["list"], cancel=cancel)


def test_missing_binary() -> None:
    """An unknown binary raises :class:`BinaryNotFoundError`."""
    with pytest.raises(BinaryNotFoundError):
        CommandExecutor(binary="/nonexistent/multipass").run(["version"])
