import json
import logging
from pathlib import Path
from typing import Dict, Optional

log = logging.getLogger(__name__)


def get_pid_info(pid_path: Path) -> Optional[Dict[str, int]]:
    """
    Reads the PID file from disk and returns its contents.

    :param pid_path: Location of the PID file.
    :return: A dictionary of PIDs if the file exists and is valid, else None.
    """
    if not pid_path.exists():
        return None
    try:
        with pid_path.open("r") as f:
            pids = json.load(f)
        if not isinstance(pids, dict) or not all(isinstance(v, int) for v in pids.values()):
            pid_path.unlink(missing_ok=True)
            return None
        return pids
    except (json.JSONDecodeError, IOError):
        pid_path.unlink(missing_ok=True)
        return None

def write_pid_file(pid_path: Path, pids: Dict[str, int]) -> None:
    """
    Atomically writes the given process PIDs to the PID file.

    :param pid_path: Location of the PID file.
    :param pids: Mapping of logical process name to PID.
    """
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    temp_pid_path = pid_path.with_suffix(".tmp")
    try:
        with temp_pid_path.open("w") as f:
            json.dump(pids, f, indent=4)
        temp_pid_path.replace(pid_path)
    except (IOError, OSError) as e:
        log.error(f"Failed to write PID file: {e}", exc_info=True)
    finally:
        temp_pid_path.unlink(missing_ok=True)

def remove_pid_file(pid_path: Path, only_pid: Optional[int] = None) -> None:
    """
    Removes the PID file.

    :param only_pid: If given, the file is only removed when it still records this PID.
    """
    if only_pid is not None:
        pids = get_pid_info(pid_path)
        if pids is not None and only_pid not in pids.values():
            return
    pid_path.unlink(missing_ok=True)
    log.debug(f"Cleaned up PID file {pid_path}.")

def write_exit_status(status_path: Path, pid: int, exit_code: int) -> None:
    """
    Records how a background supervisor ended, for the `stop` command to report.

    :param status_path: Location of the exit status file.
    :param pid: PID of the supervisor that is exiting.
    :param exit_code: Its exit code (0 graceful, 1 forced kill, 2 fatal error).
    """
    write_pid_file(status_path, {"supervisor": pid, "exit_code": exit_code})

def read_exit_status(status_path: Path, pid: int) -> Optional[int]:
    """
    Returns the exit code recorded by the supervisor with the given PID, or None.
    """
    status = get_pid_info(status_path)
    if not status or status.get("supervisor") != pid:
        return None
    return status.get("exit_code")
