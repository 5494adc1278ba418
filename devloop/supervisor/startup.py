import logging
from pathlib import Path
from typing import Optional

from devloop.supervisor import persistence, process_utils
from devloop.supervisor.models import BuildRunCommand, RunMode, WatchTarget
from devloop.supervisor.sink import LogSink
from devloop.supervisor.supervisor import RunSupervisor

log = logging.getLogger(__name__)


def build_watch_target(config) -> WatchTarget:
    """
    Builds the WatchTarget for the configured project root.

    The log file and devloop's state directory are always ignored when they
    live inside the root, whatever IGNORE_PATTERNS says; otherwise every cycle's
    output (or the supervisor's own log) would trigger the next rebuild.

    :param config: A MergedSettings instance.
    """
    root = Path(config.BASE_DIR).resolve()
    patterns = list(config.IGNORE_PATTERNS)
    for own_path in (config.LOG_FILE_PATH, config.STATE_DIR):
        try:
            relative = Path(own_path).resolve().relative_to(root).as_posix()
        except ValueError:
            continue
        if relative != "." and relative not in patterns:
            patterns.append(relative)
    return WatchTarget.create(root, config.POLL_INTERVAL_SECONDS, patterns)


def build_command(config, mode: RunMode) -> BuildRunCommand:
    """
    Returns the build-and-run command for a mode: the release build for
    watching, the plain one for a single foreground run.
    """
    command_line = config.WATCH_COMMAND if mode is RunMode.WATCH_AND_RESTART else config.RUN_COMMAND
    return BuildRunCommand.from_string(command_line, cwd=config.BASE_DIR)


def open_log_sink(config) -> LogSink:
    """Opens the configured append-only log file."""
    return LogSink(Path(config.LOG_FILE_PATH)).open()


def create_supervisor(config, mode: RunMode, sink: LogSink) -> RunSupervisor:
    """
    Wires a RunSupervisor from the effective settings.

    :param config: A MergedSettings instance.
    :param mode: The mode the supervisor will be started in.
    :param sink: An opened LogSink.
    """
    target = build_watch_target(config) if mode is RunMode.WATCH_AND_RESTART else None
    return RunSupervisor(
        command=build_command(config, mode),
        sink=sink,
        target=target,
        grace_period=config.GRACE_PERIOD_SECONDS,
        stop_epsilon=config.STOP_TIMEOUT_EPSILON,
        process_name=config.CHILD_PROCESS_NAME,
        echo_output=config.ECHO_CHILD_OUTPUT,
    )


def check_if_already_running(config) -> Optional[int]:
    """
    Checks if a background supervisor is already running based on the PID file.

    :param config: A MergedSettings instance.
    :return: The running supervisor's PID, or None. A stale PID file is removed.
    """
    pid_info = persistence.get_pid_info(Path(config.PID_FILE_PATH))
    if not pid_info:
        return None
    pid = pid_info.get("supervisor")
    if pid is not None and process_utils.is_alive(pid):
        return pid
    log.debug("Removing stale PID file.")
    persistence.remove_pid_file(Path(config.PID_FILE_PATH))
    return None
