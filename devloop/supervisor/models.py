"""
Data types shared by the change detector and the run supervisor.
"""
import os
import time
import shlex
import signal
import subprocess
from enum import Enum
from pathlib import Path
from typing import List, Mapping, NamedTuple, Optional, Tuple


class RunMode(Enum):
    WATCH_AND_RESTART = "watch"
    RUN_ONCE = "once"


class SupervisorState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"


class TriggerCause(Enum):
    INITIAL = "initial"
    CHANGE = "change"
    MANUAL = "manual"


class WatchTarget(NamedTuple):
    """The directory tree to monitor and how often to sample it."""
    root: Path
    interval: float = 10.0
    ignore_patterns: Tuple[str, ...] = ()

    @classmethod
    def create(cls, root, interval: float = 10.0, ignore_patterns=()) -> "WatchTarget":
        """
        Builds a validated, normalised WatchTarget.

        :raises ValueError: If the interval is not positive.
        """
        if interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {interval}")
        return cls(Path(root).resolve(), float(interval), tuple(ignore_patterns))


class BuildRunCommand(NamedTuple):
    """An externally supplied 'compile and run' invocation."""
    program: str
    args: Tuple[str, ...] = ()
    cwd: Optional[Path] = None
    env: Optional[Mapping[str, str]] = None

    @classmethod
    def from_string(cls, command_line: str, cwd=None, env=None) -> "BuildRunCommand":
        """
        Parses a shell-style command line such as 'cargo run --release'.

        :raises ValueError: If the command line is empty.
        """
        parts = shlex.split(command_line)
        if not parts:
            raise ValueError("Build-and-run command is empty.")
        return cls(parts[0], tuple(parts[1:]), Path(cwd) if cwd else None, env)

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]

    def __str__(self) -> str:
        return " ".join(shlex.quote(part) for part in self.argv)


class Cycle:
    """
    One build-and-run attempt, from trigger to output-flush completion.
    """

    def __init__(self, index: int, cause: TriggerCause) -> None:
        self.index = index
        self.cause = cause
        self.start_time = time.time()
        self.end_time: Optional[float] = None
        self.exit_status: Optional[int] = None
        self.process: Optional[subprocess.Popen] = None
        self.reader = None
        self.terminated = False  # stopped by the supervisor rather than exiting on its own
        self.eof_time: Optional[float] = None  # monotonic time the output pipe closed
        self.finished = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def running(self) -> bool:
        return self.end_time is None

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0

    @property
    def duration(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def describe(self) -> str:
        """Human readable outcome, e.g. 'failed, exit code 3'."""
        if self.exit_status is None:
            return "running"
        if self.exit_status == 0:
            return "succeeded"
        if self.exit_status < 0 and os.name != "nt":
            try:
                name = signal.Signals(-self.exit_status).name
            except ValueError:
                name = str(-self.exit_status)
            return f"terminated by signal {name}"
        return f"failed, exit code {self.exit_status}"

    def __repr__(self) -> str:
        return f"<Cycle #{self.index} {self.cause.value} pid={self.pid} {self.describe()}>"
