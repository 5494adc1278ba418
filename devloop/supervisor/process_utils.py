import os
import sys
import psutil
import logging
import threading
import subprocess
from typing import Any, Callable, Dict, List, Optional

from devloop.supervisor.errors import LaunchError
from devloop.supervisor.models import BuildRunCommand
from devloop.supervisor.sink import LogSink

log = logging.getLogger(__name__)


#* --- Process Status ---
def pid_exists(pid: int) -> bool:
    """A wrapper for psutil.pid_exists for easy testing/mocking if needed."""
    return psutil.pid_exists(pid)

def get_process_from_pid(pid: int) -> psutil.Process:
    """A wrapper for psutil.Process for easy testing/mocking if needed."""
    return psutil.Process(pid)

def is_alive(pid: int) -> bool:
    """True if the pid exists and is not a zombie waiting to be reaped."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.Error:
        return pid_exists(pid)

def get_descendants(pid: int) -> List[psutil.Process]:
    """Returns all child processes of `pid`, recursively; empty if it is gone."""
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []

#* --- Process Creation ---
def _get_popen_creation_flags(new_session: bool) -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        flags = subprocess.CREATE_NEW_PROCESS_GROUP if new_session else 0
        return {"creationflags": flags}
    return {"start_new_session": new_session}

def build_child_env(command: BuildRunCommand) -> Optional[Dict[str, str]]:
    """
    Returns the environment for the child: the supervisor's own environment
    (already including `.env` values) updated with the command's variables.
    """
    if command.env is None:
        return None
    env = dict(os.environ)
    env.update(command.env)
    return env

def launch_process(command: BuildRunCommand, new_session: bool = True) -> subprocess.Popen:
    """
    Starts the build-and-run command with stdout and stderr merged into one pipe.

    :param command: The command to execute.
    :param new_session: Detach the child into its own session/process group.
    :return: The running Popen object.
    :raises LaunchError: If the executable cannot be started.
    """
    log.info(f"Starting process: {command}...")
    try:
        p = subprocess.Popen(
            command.argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            cwd=str(command.cwd) if command.cwd else None,
            env=build_child_env(command),
            **_get_popen_creation_flags(new_session),
        )
    except (OSError, ValueError) as e:
        log.error(f"Failed to start process '{command}': {e}")
        raise LaunchError(command, e) from e
    log.info(f"Process started with PID: {p.pid}")
    return p

#* --- Output Streaming ---
def _pump_output(
    pipe,
    sink: LogSink,
    cycle_index: int,
    process_name: str,
    echo: bool,
    on_eof: Optional[Callable[[], None]],
) -> None:
    """Target function for reader threads. Copies raw lines from a child pipe into the sink."""
    proc_logger = logging.getLogger(f"proc.{process_name}")
    dropped = 0
    try:
        for line_bytes in iter(pipe.readline, b""):
            if not sink.write(line_bytes, cycle_index):
                dropped += len(line_bytes)
            if echo:
                proc_logger.info(line_bytes.decode("utf-8", errors="replace").rstrip("\r\n"))
    except (OSError, ValueError) as e:
        proc_logger.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()
        if dropped:
            log.warning(f"Discarded {dropped} bytes written by cycle #{cycle_index} after it finished.")
        if on_eof is not None:
            on_eof()

def stream_output(
    process: subprocess.Popen,
    sink: LogSink,
    cycle_index: int,
    process_name: str = "app",
    echo: bool = False,
    on_eof: Optional[Callable[[], None]] = None,
) -> threading.Thread:
    """
    Starts a background thread consuming the child's merged output pipe.

    Consuming the pipe continuously keeps it from filling up and blocking the
    child. `on_eof` is called once the pipe is closed by the child.
    """
    reader = threading.Thread(
        target=_pump_output,
        args=(process.stdout, sink, cycle_index, process_name, echo, on_eof),
        daemon=True,
        name=f"OutputPump-{cycle_index}",
    )
    reader.start()
    return reader
