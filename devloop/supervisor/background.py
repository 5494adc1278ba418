import os
import sys
import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from devloop.supervisor import persistence, process_utils, shutdown
from devloop.supervisor.errors import AlreadyRunningError, LaunchError

log = logging.getLogger(__name__)

SUPERVISOR_MODULE = "devloop.entry.supervisor"


class BackgroundHandle:
    """
    A handle on the detached watch-mode supervisor process.

    Returned by `launch_in_background` or rebuilt from the PID file by a later
    invocation, so the caller can check on it or stop it.
    """

    def __init__(self, pid: int, pid_path: Optional[Path] = None, process: Optional[subprocess.Popen] = None) -> None:
        self.pid = pid
        self.pid_path = pid_path
        self._process = process

    @classmethod
    def from_pid_file(cls, pid_path: Path) -> Optional["BackgroundHandle"]:
        """Rebuilds a handle from the PID file, or None if there is none."""
        pid_info = persistence.get_pid_info(pid_path)
        if not pid_info or "supervisor" not in pid_info:
            return None
        return cls(pid_info["supervisor"], pid_path)

    def is_running(self) -> bool:
        if self._process is not None:
            return self._process.poll() is None
        return process_utils.is_alive(self.pid)

    def stop(self, timeout: float) -> bool:
        """
        Sends SIGTERM to the supervisor, which stops its child and exits.

        :param timeout: Seconds to wait before force-killing the supervisor.
        :return: True if the supervisor had to be force-killed.
        """
        if not self.is_running():
            log.info(f"Background supervisor (PID {self.pid}) is not running.")
            forced = False
        elif self._process is not None:
            forced = shutdown.terminate_child(self._process, timeout)
        else:
            forced = shutdown.stop_pid(self.pid, timeout)

        if self.pid_path is not None:
            persistence.remove_pid_file(self.pid_path, only_pid=self.pid)
        return forced

    def __repr__(self) -> str:
        return f"<BackgroundHandle pid={self.pid}>"


def _get_detach_kwargs() -> dict:
    """Returns platform-specific Popen arguments that detach the supervisor from the terminal."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.DETACHED_PROCESS | subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}


def supervisor_args(verbose: bool = False) -> List[str]:
    """Returns the command line of the background supervisor process."""
    args = [sys.executable, "-m", SUPERVISOR_MODULE]
    if verbose:
        args.append("--verbose")
    return args


def launch_in_background(config, verbose: bool = False) -> BackgroundHandle:
    """
    Starts watch mode as a detached background process and records its PID.

    :param config: A MergedSettings instance.
    :param verbose: Run the background supervisor with DEBUG logging.
    :return: A handle the caller may later use to stop it.
    :raises AlreadyRunningError: If the PID file points at a live supervisor.
    :raises LaunchError: If the supervisor process cannot be started.
    """
    pid_path = Path(config.PID_FILE_PATH)
    existing = BackgroundHandle.from_pid_file(pid_path)
    if existing is not None and existing.is_running():
        raise AlreadyRunningError(f"devloop is already running in the background (PID {existing.pid}).")

    env = dict(os.environ)
    env["DEVLOOP_ROOT"] = str(config.BASE_DIR)
    args = supervisor_args(verbose)
    try:
        p = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            cwd=str(config.BASE_DIR),
            env=env,
            **_get_detach_kwargs(),
        )
    except OSError as e:
        log.critical(f"Failed to start background supervisor: {e}", exc_info=True)
        raise LaunchError(" ".join(args), e) from e

    persistence.write_pid_file(pid_path, {"supervisor": p.pid})
    log.info(f"Background supervisor started with PID: {p.pid}")
    return BackgroundHandle(p.pid, pid_path, process=p)
