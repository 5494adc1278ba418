import logging
from typing import List

from devloop.console.handler import (
    display_status,
    handle_config_command,
    handle_dev_command,
    handle_logs_command,
    handle_start_command,
    handle_stop_command,
    handle_watch_command,
    print_help,
)

log = logging.getLogger(__name__)


def execute_command(command: str, args: List[str], verbose: bool = False) -> int:
    """
    Executes a single command from the user.

    :param command: The main command string (e.g., 'start', 'dev').
    :param args: A list of arguments for the command.
    :param verbose: Whether '--verbose' was given.
    :return int: The process exit code.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    command_map = {
        "start": lambda: handle_start_command(verbose),
        "dev": handle_dev_command,
        "watch": lambda: handle_watch_command(verbose),
        "stop": handle_stop_command,
        "status": display_status,
        "logs": lambda: handle_logs_command(args),
        "config": lambda: handle_config_command(args),
        "help": print_help,
    }

    if command in command_map:
        return command_map[command]()

    log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
    return 1
