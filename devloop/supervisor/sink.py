import time
import logging
import threading
from pathlib import Path
from typing import BinaryIO, Optional

log = logging.getLogger(__name__)


class LogSink:
    """
    The append-only log file receiving every cycle's child output.

    The file is opened once in append mode and never truncated. Writes are
    serialised by a single lock and tagged with the cycle that produced them:
    only the active cycle may write, so bytes from two cycles never interleave.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._file: Optional[BinaryIO] = None
        self._active_cycle: Optional[int] = None
        self.bytes_written = 0
        self.bytes_dropped = 0

    def open(self) -> "LogSink":
        """Opens the log file for appending, creating parent directories as needed."""
        with self._lock:
            if self._file is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._file = self.path.open("ab")
                log.debug(f"Log sink opened at {self.path}")
        return self

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
            self._active_cycle = None

    @property
    def closed(self) -> bool:
        return self._file is None

    def __enter__(self) -> "LogSink":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    #* --- Cycle ownership ---
    def begin_cycle(self, cycle_index: int) -> None:
        """Hands the sink to a new cycle. Any previous cycle loses write access."""
        with self._lock:
            self._active_cycle = cycle_index

    def end_cycle(self, cycle_index: int) -> None:
        """Revokes write access for a finished cycle."""
        with self._lock:
            if self._active_cycle == cycle_index:
                self._active_cycle = None

    #* --- Writing ---
    def write(self, data: bytes, cycle_index: int) -> bool:
        """
        Appends raw child output on behalf of a cycle.

        :return: True if written, False if the cycle no longer owns the sink.
        """
        with self._lock:
            if self._file is None or self._active_cycle != cycle_index:
                self.bytes_dropped += len(data)
                return False
            self._file.write(data)
            self._file.flush()
            self.bytes_written += len(data)
            return True

    def write_note(self, message: str) -> None:
        """
        Appends a supervisor note (launch failures, forced kills) as its own line.
        """
        stamp = time.strftime("%Y-%m-%d %H:%M:%S")
        line = f"[devloop {stamp}] {message}\n".encode("utf-8", errors="replace")
        with self._lock:
            if self._file is None:
                log.warning(f"Log sink closed, note not written: {message}")
                return
            self._file.write(line)
            self._file.flush()
