"""Shared test fixtures for devloop."""

from __future__ import annotations

import sys
import textwrap
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from devloop.config import MergedSettings
from devloop.supervisor import BuildRunCommand, LogSink


# Child that prints BEGIN, runs until SIGTERM, then prints END after `delay` seconds.
GRACEFUL_CHILD = """
import os, signal, sys, time

def _stop(signum, frame):
    time.sleep({delay})
    print(f"END {{os.getpid()}}", flush=True)
    sys.exit(0)

signal.signal(signal.SIGTERM, _stop)
print(f"BEGIN {{os.getpid()}}", flush=True)
while True:
    time.sleep(0.05)
"""

# Child that ignores SIGTERM entirely.
STUBBORN_CHILD = """
import os, signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print(f"READY {os.getpid()}", flush=True)
while True:
    time.sleep(0.05)
"""

FAILING_CHILD = """
import sys
print("building...")
print("error: something broke", file=sys.stderr)
sys.exit(3)
"""


def python_command(script: str, cwd: Path | None = None, env=None) -> BuildRunCommand:
    """A BuildRunCommand running `script` with the current interpreter, unbuffered."""
    return BuildRunCommand(sys.executable, ("-u", "-c", textwrap.dedent(script)), cwd, env)


def graceful_command(delay: float = 0.0, cwd: Path | None = None) -> BuildRunCommand:
    return python_command(GRACEFUL_CHILD.format(delay=delay), cwd)


@pytest.fixture
def py_command() -> Callable[..., BuildRunCommand]:
    """Factory for commands running an inline Python script."""
    return python_command


@pytest.fixture
def graceful() -> Callable[..., BuildRunCommand]:
    """Factory for the BEGIN/END child that exits on SIGTERM."""
    return graceful_command


@pytest.fixture
def stubborn() -> BuildRunCommand:
    return python_command(STUBBORN_CHILD)


@pytest.fixture
def failing() -> BuildRunCommand:
    return python_command(FAILING_CHILD)


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    """Polls a predicate until it is true or the timeout expires."""
    def _wait_for(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.02) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait_for


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A watched project directory holding a single file `a.txt`."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "a.txt").write_text("version one")
    return root


@pytest.fixture
def sink(tmp_path: Path):
    """An opened LogSink outside the watched project."""
    log_sink = LogSink(tmp_path / "logs" / "out.log").open()
    yield log_sink
    log_sink.close()


@pytest.fixture
def log_text(sink: LogSink) -> Callable[[], str]:
    """Reads back everything appended to the sink so far."""
    def _read() -> str:
        return sink.path.read_text(encoding="utf-8", errors="replace")
    return _read


@pytest.fixture
def settings(tmp_path: Path) -> MergedSettings:
    """A MergedSettings instance rooted in a temp directory."""
    config = MergedSettings(overrides_path=tmp_path / ".devloop" / "overrides.json")
    config.BASE_DIR = tmp_path
    config.STATE_DIR = tmp_path / ".devloop"
    config.LOG_FILE_PATH = tmp_path / "out.log"
    config.PID_FILE_PATH = tmp_path / ".devloop" / "devloop.pid"
    config.EXIT_STATUS_PATH = tmp_path / ".devloop" / "last_exit.json"
    config.SUPERVISOR_LOG_PATH = tmp_path / ".devloop" / "supervisor.log"
    config.POLL_INTERVAL_SECONDS = 0.05
    config.GRACE_PERIOD_SECONDS = 2.0
    return config
