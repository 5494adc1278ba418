import time
import psutil
import logging
import subprocess
from typing import List

from devloop.supervisor import process_utils

log = logging.getLogger(__name__)


def _terminate_processes(processes: List[psutil.Process]) -> None:
    """Sends SIGTERM to all given processes."""
    for proc in processes:
        try:
            log.debug(f"Sending SIGTERM to {proc.name()} (PID {proc.pid})")
            proc.terminate()
        except psutil.NoSuchProcess:
            log.debug(f"Process {proc.pid} no longer exists, skipping termination.")
            continue


def _forceful_kill(processes: List[psutil.Process]) -> None:
    """Forcefully kills processes that didn't terminate gracefully."""
    if not processes:
        return

    log.warning(f"{len(processes)} processes did not terminate gracefully. Forcing shutdown...")
    for proc in processes:
        try:
            log.warning(f"Killing stubborn process {proc.name()} (PID {proc.pid}).")
            proc.kill()
        except psutil.NoSuchProcess:
            log.debug(f"Process {proc.pid} no longer exists, skipping forceful kill.")
            continue


def _still_running(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def graceful_shutdown_sequence(processes: List[psutil.Process], timeout: float) -> bool:
    """
    Terminates the given processes, waits up to `timeout` seconds and kills survivors.

    :param processes: psutil.Process objects that are not children of this process.
    :param timeout: The grace period in seconds.
    :return: True if any process had to be force-killed.
    """
    if not processes:
        return False
    _terminate_processes(processes)
    try:
        _, alive = psutil.wait_procs(processes, timeout=timeout)
    except psutil.NoSuchProcess:
        alive = []

    _forceful_kill(alive)
    if alive:
        psutil.wait_procs(alive, timeout=1)
    return bool(alive)


def terminate_child(process: subprocess.Popen, grace_period: float) -> bool:
    """
    Stops a cycle's child process and all of its descendants.

    The direct child is stopped through its Popen object so its exit status is
    kept; descendants (e.g. the program `cargo run` started) go through psutil.

    :param process: The cycle's child process.
    :param grace_period: Seconds to wait after SIGTERM before SIGKILL.
    :return: True if a forced kill was required.
    """
    if process.poll() is not None:
        # The child is gone but orphaned descendants may still hold the pipe.
        return graceful_shutdown_sequence(
            [p for p in process_utils.get_descendants(process.pid) if p.is_running()], grace_period
        )

    descendants = process_utils.get_descendants(process.pid)
    deadline = time.monotonic() + grace_period
    log.info(f"Terminating process PID {process.pid} ({len(descendants)} descendants)...")
    process.terminate()
    _terminate_processes(descendants)

    forced = False
    try:
        process.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        log.warning(f"Process PID {process.pid} ignored SIGTERM for {grace_period}s. Killing it.")
        process.kill()
        process.wait()
        forced = True

    remaining = max(0.0, deadline - time.monotonic())
    _, alive = psutil.wait_procs(descendants, timeout=remaining)
    _forceful_kill(alive)
    return forced or bool(alive)


def stop_pid(pid: int, timeout: float) -> bool:
    """
    Stops a process we did not spawn ourselves (the background supervisor).

    The process gets SIGTERM and `timeout` seconds to stop its own children.
    Descendants recorded before signalling that survive it (e.g. a cycle child
    in its own session when the supervisor had to be killed) are killed too.

    :return: True if the process or any of its descendants had to be force-killed.
    """
    try:
        proc = process_utils.get_process_from_pid(pid)
        descendants = proc.children(recursive=True)
    except psutil.NoSuchProcess:
        log.info(f"Process {pid} is not running.")
        return False

    forced = graceful_shutdown_sequence([proc], timeout)
    leftovers = [p for p in descendants if _still_running(p)]
    if leftovers:
        log.warning(f"{len(leftovers)} descendants of PID {pid} outlived it.")
        _forceful_kill(leftovers)
        psutil.wait_procs(leftovers, timeout=1)
        forced = True
    return forced
