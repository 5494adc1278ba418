"""
This module contains the configuration settings for devloop.
It defines paths, the build-and-run commands, watch and shutdown timings and
logging configuration. Every value can be overridden from the environment or
from a `.env` file in the project being developed.
"""

import os
import pathlib
from dotenv import find_dotenv, load_dotenv

# Load environment variables from the project's .env file, searched upwards from
# the working directory. Variables already exported in the shell win, and the
# child process inherits the merged environment.
load_dotenv(find_dotenv(usecwd=True))


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


def _env_list(name: str) -> list:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


#* --- Core Paths ---
BASE_DIR = pathlib.Path(os.getenv("DEVLOOP_ROOT", os.getcwd())).resolve()  # Watched project root
STATE_DIR = BASE_DIR / ".devloop"

#* --- Application File Paths ---
LOG_FILE_PATH = BASE_DIR / os.getenv("DEVLOOP_LOG_FILE", "out.log")
SUPERVISOR_LOG_PATH = STATE_DIR / "supervisor.log"
PID_FILE_PATH = STATE_DIR / "devloop.pid"
EXIT_STATUS_PATH = STATE_DIR / "last_exit.json"  # written by the background supervisor on exit
OVERRIDES_JSON_PATH = STATE_DIR / "overrides.json"

#* --- Build & Run Commands ---
# 'start' rebuilds in release mode on every change, 'dev' runs once.
WATCH_COMMAND = os.getenv("DEVLOOP_WATCH_COMMAND", "cargo run --release")
RUN_COMMAND = os.getenv("DEVLOOP_RUN_COMMAND", "cargo run")

#* --- Watcher Settings ---
POLL_INTERVAL_SECONDS = float(os.getenv("DEVLOOP_POLL_INTERVAL", "10"))
DEFAULT_IGNORE_PATTERNS = [
    ".git", ".hg", ".svn", ".devloop", ".idea", ".vscode",
    "target", "node_modules", "__pycache__",
    "*.swp", "*.swx", "*~", ".#*", "*.tmp",
]
IGNORE_PATTERNS = DEFAULT_IGNORE_PATTERNS + _env_list("DEVLOOP_IGNORE")

#* --- Supervisor Settings ---
GRACE_PERIOD_SECONDS = float(os.getenv("DEVLOOP_GRACE_PERIOD", "5"))  # seconds before force-killing
STOP_TIMEOUT_EPSILON = 1.0  # slack on top of the grace period for stop()
BACKGROUND_STOP_SLACK = 3.0  # extra time `devloop stop` allows beyond the supervisor's own stop budget
PROCESS_TITLE = "devloop - Supervisor"
CHILD_PROCESS_NAME = os.getenv("DEVLOOP_PROCESS_NAME", "app")

#* --- Logging ---
ECHO_CHILD_OUTPUT = _env_flag("DEVLOOP_ECHO_OUTPUT", "False")
LOG_HISTORY_COUNT = 50

#* --- MODIFIABLE SETTINGS (Changeable via the 'config' command) ---
MODIFIABLE_SETTINGS = {
    "WATCH_COMMAND", "RUN_COMMAND",
    "POLL_INTERVAL_SECONDS", "GRACE_PERIOD_SECONDS",
    "IGNORE_PATTERNS", "ECHO_CHILD_OUTPUT",
    "LOG_FILE_PATH", "LOG_HISTORY_COUNT",
}
