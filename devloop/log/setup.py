import logging
import sys
from pathlib import Path
from typing import Optional


class SubprocessLogFilter(logging.Filter):
    """
    This filter identifies logs coming from the subprocess logger
    and keeps echoed child output out of the supervisor's own log file.
    """
    def filter(self, record):
        # The 'proc.' prefix is used by the output pump in process_utils.py
        return not record.name.startswith('proc.')

class MainFormatter(logging.Formatter):
    """A custom formatter to handle regular logs and raw subprocess logs."""

    def format(self, record):
        # If the log is from a subprocess, just return the raw message.
        if record.name.startswith('proc.'):
            return record.getMessage()

        # Otherwise, use the default formatting.
        # Temporarily change the format string for the superclass call.
        original_format = self._style._fmt
        self._style._fmt = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
        formatted_message = super().format(record)
        self._style._fmt = original_format
        return formatted_message

def setup_logging(console_level: int = logging.INFO, log_file: Optional[Path] = None) -> None:
    """
    Configures the root logger for devloop.
    This sets up a console handler and, for the background supervisor, a file
    handler, clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param log_file: Optional path of the supervisor's own log file.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- Supervisor File Handler (background mode) ---
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(MainFormatter())
            file_handler.addFilter(SubprocessLogFilter())
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.error(f"Failed to initialize supervisor log file '{log_file}': {e}. File logging will be disabled.")
