"""
This is a minimal entry point script for the watch-mode supervisor process.

It is what `devloop start` runs detached in the background and what
`devloop watch` runs in the foreground: it opens the log sink, starts the
RunSupervisor in watch mode and keeps it running until SIGTERM/SIGINT.
"""
import os
import sys
import signal
import logging
import threading
import setproctitle

from devloop.config import effective_settings as config
from devloop.log.setup import setup_logging
from devloop.supervisor import RunMode, persistence, startup

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FORCED_KILL = 1
EXIT_FATAL = 2


def run_watch(verbose: bool = False, background: bool = False) -> int:
    """
    Runs watch mode until terminated.

    :param verbose: Log at DEBUG level on the console.
    :param background: Also log to the supervisor log file and own the PID file.
    :return: 0 after a graceful shutdown, 1 if a forced kill was required,
             2 if watching failed fatally.
    """
    setup_logging(
        logging.DEBUG if verbose else logging.INFO,
        log_file=config.SUPERVISOR_LOG_PATH if background else None,
    )
    shutdown_requested = threading.Event()

    def _handle_signal(signum, frame):
        log.info(f"Received {signal.Signals(signum).name}, shutting down.")
        shutdown_requested.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = EXIT_FATAL
    try:
        with startup.open_log_sink(config) as sink:
            try:
                supervisor = startup.create_supervisor(config, RunMode.WATCH_AND_RESTART, sink)
            except ValueError as e:
                log.critical(f"Invalid watch configuration: {e}")
                sink.write_note(f"invalid watch configuration: {e}")
                return EXIT_FATAL

            supervisor.start(RunMode.WATCH_AND_RESTART)
            while not shutdown_requested.wait(0.5):
                if supervisor.wait(0):
                    break  # The coordinator ended on its own (fatal watch error).
            exit_code = _exit_code(supervisor, supervisor.stop())
    finally:
        if background:
            persistence.write_exit_status(config.EXIT_STATUS_PATH, os.getpid(), exit_code)
            persistence.remove_pid_file(config.PID_FILE_PATH, only_pid=os.getpid())
    return exit_code


def _exit_code(supervisor, forced: bool) -> int:
    if supervisor.fatal_error is not None:
        log.critical(f"Watcher stopped after a fatal error: {supervisor.fatal_error}")
        return EXIT_FATAL
    if forced:
        log.warning("Shutdown required a forced kill.")
        return EXIT_FORCED_KILL
    log.info("Watcher stopped gracefully.")
    return EXIT_OK


def main() -> None:
    setproctitle.setproctitle(config.PROCESS_TITLE)
    sys.exit(run_watch(verbose="--verbose" in sys.argv[1:], background=True))


if __name__ == "__main__":
    main()
