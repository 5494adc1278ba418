import time
import psutil
import logging
from pathlib import Path
from typing import List

from devloop.config import effective_settings as config
from devloop.entry.supervisor import EXIT_FATAL, EXIT_FORCED_KILL, run_watch
from devloop.supervisor import (
    AlreadyRunningError,
    BackgroundHandle,
    LaunchError,
    RunMode,
    launch_in_background,
    persistence,
    startup,
)

log = logging.getLogger(__name__)

EXIT_LAUNCH_FAILED = 127
EXIT_INTERRUPTED = 130


#* --- Run commands ---
def handle_start_command(verbose: bool = False) -> int:
    """Starts watch mode detached in the background ('start')."""
    try:
        handle = launch_in_background(config, verbose)
    except AlreadyRunningError as e:
        log.error(f"{e} Use 'stop' first.")
        return 1
    except LaunchError as e:
        log.error(str(e))
        return 1
    print(f"devloop is watching {config.BASE_DIR} in the background (PID {handle.pid}).")
    print(f"Output is appended to {config.LOG_FILE_PATH}. Use 'devloop stop' to stop it.")
    return 0

def handle_watch_command(verbose: bool = False) -> int:
    """Runs watch mode in the foreground ('watch')."""
    if startup.check_if_already_running(config):
        log.error("devloop is already running in the background. Use 'stop' first.")
        return 1
    return run_watch(verbose=verbose)

def handle_dev_command() -> int:
    """
    Builds and runs once in the foreground ('dev').

    :return: The child's exit code, 127 if it could not be launched, 130 on Ctrl+C.
    """
    with startup.open_log_sink(config) as sink:
        supervisor = startup.create_supervisor(config, RunMode.RUN_ONCE, sink)
        try:
            cycle = supervisor.start(RunMode.RUN_ONCE)
        except LaunchError as e:
            log.error(str(e))
            return EXIT_LAUNCH_FAILED
        except KeyboardInterrupt:
            log.warning("Interrupted.")
            return EXIT_INTERRUPTED

    print(f"Run {cycle.describe()}. Output appended to {config.LOG_FILE_PATH}.")
    if cycle.exit_status < 0:
        # Killed by a signal: report it the way a shell would.
        return 128 - cycle.exit_status
    return cycle.exit_status

def handle_stop_command() -> int:
    """Stops the background supervisor recorded in the PID file ('stop')."""
    handle = BackgroundHandle.from_pid_file(config.PID_FILE_PATH)
    if handle is None:
        print("devloop is not running (no PID file found).")
        return 0
    log.info(f"Stopping background supervisor (PID {handle.pid})...")
    # Outlast the supervisor's own stop budget so it can finish its cycle first.
    timeout = config.GRACE_PERIOD_SECONDS + config.STOP_TIMEOUT_EPSILON + config.BACKGROUND_STOP_SLACK
    forced = handle.stop(timeout)
    if forced:
        log.warning("The background supervisor had to be killed.")
        return 1

    exit_code = persistence.read_exit_status(Path(config.EXIT_STATUS_PATH), handle.pid)
    if exit_code == EXIT_FORCED_KILL:
        log.warning("devloop stopped, but the running program ignored SIGTERM and was killed.")
        return 1
    if exit_code == EXIT_FATAL:
        log.warning("devloop stopped after a fatal error. See the log file for details.")
        return 1
    print("devloop stopped.")
    return 0

#* --- Status & logs ---
def _describe_process(p: psutil.Process, label: str) -> str:
    cpu = p.cpu_percent(interval=0.1)
    mem = p.memory_info().rss
    return (f"  - {p.name() + ' (' + label + ')':<32} : PID {p.pid:<8} | Status: {p.status().upper()}"
            f" | CPU: {cpu:.1f}% | MEM: {mem/1024/1024:.1f} MB")

def display_status() -> int:
    """Checks and displays the status of the background supervisor and its children."""
    handle = BackgroundHandle.from_pid_file(config.PID_FILE_PATH)
    if handle is None:
        print("\ndevloop is STOPPED (No PID file found).\n")
        return 0

    print("\n--- devloop Status ---")
    if not handle.is_running():
        print(f"\nWARNING: The supervisor (PID {handle.pid}) is gone but a stale PID file exists.")
        print("Run 'stop' to clean it up before starting again.\n")
        return 1

    try:
        supervisor_proc = psutil.Process(handle.pid)
        print(_describe_process(supervisor_proc, "supervisor"))
        for child in supervisor_proc.children(recursive=True):
            try:
                print(_describe_process(child, "cycle"))
            except psutil.NoSuchProcess:
                continue
        print(f"\n  Started:  {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(supervisor_proc.create_time()))}")
    except psutil.Error as e:
        log.error(f"Could not read process information: {e}")
        return 1
    print(f"  Watching: {config.BASE_DIR} every {config.POLL_INTERVAL_SECONDS:g}s")
    print(f"  Log file: {config.LOG_FILE_PATH}")
    print("-" * 22 + "\n")
    return 0

def _tail_lines(path: Path, count: int) -> List[str]:
    with path.open("rb") as f:
        lines = f.readlines()
    return [line.decode("utf-8", errors="replace").rstrip("\r\n") for line in lines[-count:]]

def handle_logs_command(args: List[str]) -> int:
    """
    Handles the 'logs' command: prints the last lines of the log file, then
    follows it until Ctrl+C.
    """
    log_path = Path(config.LOG_FILE_PATH)
    if not log_path.exists():
        print(f"No log file at {log_path} yet.")
        return 0
    try:
        count = int(args[0]) if args else config.LOG_HISTORY_COUNT
    except ValueError:
        print("Usage: logs [number_of_lines]")
        return 1

    print(f"\n--- Displaying last {count} lines of {log_path} ---")
    for line in _tail_lines(log_path, count):
        print(line)

    print("\n--- Now following new output (Press Ctrl+C to stop) ---\n")
    try:
        with log_path.open("rb") as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.2)
                    continue
                print(line.decode("utf-8", errors="replace").rstrip("\r\n"))
    except KeyboardInterrupt:
        print("\n--- Log following stopped. ---")
    return 0

#* --- Configuration ---
def _config_show() -> None:
    """Displays the current values of all modifiable settings."""
    print("\n--- Current devloop Configuration ---")
    print(f"(Overrides file: {config.OVERRIDES_JSON_PATH})")
    for key in sorted(config.MODIFIABLE_SETTINGS):
        print(f"  {key} = {config.get(key, 'N/A')}")
    print("---")
    print("Use 'config set <KEY> <VALUE>' to change a setting.")
    print("A running watcher must be restarted for changes to apply.")
    print("-------------------------------------\n")

def _config_set(args: List[str]) -> int:
    """Sets and persists a configuration setting."""
    if len(args) < 2:
        print("Usage: config set <SETTING_NAME> <VALUE>")
        return 1
    key, value_str = args[0].upper(), " ".join(args[1:])
    success, message = config.update_setting(key, value_str)
    print(message)
    return 0 if success else 1

def _config_help() -> None:
    """Displays help for the config command."""
    print("\nConfig Command Help:")
    print("  config show                - Display all modifiable settings.")
    print("  config set KEY VALUE       - Change and persist a setting.")
    print("  config help                - Show this help message.")

def handle_config_command(args: List[str]) -> int:
    """
    Handles all sub-commands for the 'config' command.

    :param args: A list of string arguments following the 'config' command.
    """
    sub_command = args[0].lower() if args else "show"

    if sub_command == "show":
        _config_show()
    elif sub_command == "set":
        return _config_set(args[1:])
    elif sub_command == "help":
        _config_help()
    else:
        print(f"Unknown config sub-command: '{sub_command}'. Type 'config help' for available commands.")
        return 1
    return 0

def print_help() -> int:
    """Prints the main help text."""
    print("\nUsage: devloop <command> [--verbose]")
    print("\nAvailable commands:")
    print("  start                  - Watch the project in the background, rebuilding and rerunning on changes.")
    print("  dev                    - Build and run once in the foreground.")
    print("  watch                  - Watch in the foreground (Ctrl+C to stop).")
    print("  stop                   - Stop the background watcher gracefully.")
    print("  status                 - Show the background watcher and its running program.")
    print("  logs [N]               - Show the last N log lines and follow new output.")
    print("  config <cmd>           - Manage configuration. Use 'config help' for more details.")
    print("  help                   - Show this message.")
    print()
    return 0
