import os
import time
import fnmatch
import logging
import threading
from typing import Iterator, List, Optional
from watchdog.utils.dirsnapshot import DirectorySnapshot, DirectorySnapshotDiff

from devloop.supervisor.errors import WatchRootError
from devloop.supervisor.models import WatchTarget

log = logging.getLogger(__name__)


class ChangeDetector:
    """
    Samples a WatchTarget on a fixed interval and reports whether anything
    under it changed since the previous sample.

    The first poll only records the baseline. Ignored entries are pruned
    during the walk, so an ignored directory such as `target/` is never read.
    """

    def __init__(self, target: WatchTarget) -> None:
        self.target = target
        self._root = str(target.root)
        self._snapshot: Optional[DirectorySnapshot] = None
        self._next_sample_at = 0.0
        self.samples_taken = 0

    #* --- Public API ---
    def poll(self, wakeup: Optional[threading.Event] = None) -> bool:
        """
        Blocks until the next sampling instant, then reports whether the tree changed.

        :param wakeup: Optional event; when it is set while waiting, poll returns
                       False immediately without sampling.
        :return: True iff the tree differs from the previous sample.
        :raises WatchRootError: If the root directory cannot be read.
        """
        if self._snapshot is not None:
            remaining = self._next_sample_at - time.monotonic()
            if remaining > 0:
                if wakeup is not None:
                    if wakeup.wait(remaining):
                        return False
                else:
                    time.sleep(remaining)
        return self.check()

    def check(self) -> bool:
        """
        Samples the tree immediately and compares it with the previous sample.

        :return: True iff something changed. Always False for the first sample.
        :raises WatchRootError: If the root directory cannot be read.
        """
        snapshot = self._take_snapshot()
        self._next_sample_at = time.monotonic() + self.target.interval
        self.samples_taken += 1

        previous, self._snapshot = self._snapshot, snapshot
        if previous is None:
            log.debug(f"Baseline established for {self._root} ({len(snapshot.paths)} entries).")
            return False

        changes = self._describe_changes(DirectorySnapshotDiff(previous, snapshot))
        if changes:
            log.debug(f"Changes under {self._root}: {', '.join(changes[:5])}")
            return True
        return False

    def reset(self) -> None:
        """Forgets the baseline; the next poll establishes a new one."""
        self._snapshot = None
        self._next_sample_at = 0.0

    #* --- Snapshot helpers ---
    def is_ignored(self, path: str) -> bool:
        """Checks an absolute path against the ignore patterns (name and root-relative path)."""
        if not self.target.ignore_patterns:
            return False
        name = os.path.basename(path)
        relative = os.path.relpath(path, self._root).replace(os.sep, "/")
        return any(
            fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(relative, pattern)
            for pattern in self.target.ignore_patterns
        )

    def _listdir(self, path: str) -> Iterator[os.DirEntry]:
        """
        Directory lister handed to DirectorySnapshot.

        Unreadable subdirectories are skipped; an unreadable root propagates.
        """
        try:
            with os.scandir(path) as it:
                entries: List[os.DirEntry] = list(it)
        except PermissionError as e:
            if os.path.normpath(path) == self._root:
                raise
            log.debug(f"Skipping unreadable directory {path}: {e}")
            return iter(())
        return iter([e for e in entries if not self.is_ignored(os.path.join(path, e.name))])

    def _take_snapshot(self) -> DirectorySnapshot:
        if not os.path.isdir(self._root):
            raise WatchRootError(self._root, FileNotFoundError(f"'{self._root}' is not a directory"))
        try:
            return DirectorySnapshot(self._root, recursive=True, stat=os.lstat, listdir=self._listdir)
        except OSError as e:
            raise WatchRootError(self._root, e) from e

    @staticmethod
    def _describe_changes(diff: DirectorySnapshotDiff) -> List[str]:
        # Directory mtime updates alone are ignored: they also fire when an
        # ignored entry (like the log file) is created next to watched files.
        changes: List[str] = []
        changes.extend(f"created {p}" for p in diff.files_created)
        changes.extend(f"deleted {p}" for p in diff.files_deleted)
        changes.extend(f"modified {p}" for p in diff.files_modified)
        changes.extend(f"moved {src} -> {dst}" for src, dst in diff.files_moved)
        changes.extend(f"created {p}/" for p in diff.dirs_created)
        changes.extend(f"deleted {p}/" for p in diff.dirs_deleted)
        changes.extend(f"moved {src}/ -> {dst}/" for src, dst in diff.dirs_moved)
        return changes
