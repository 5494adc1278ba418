"""Tests for the polling ChangeDetector."""

from __future__ import annotations

import os
import shutil
import threading
import time
from pathlib import Path

import pytest

from devloop.supervisor import ChangeDetector, WatchRootError, WatchTarget


def make_detector(root: Path, interval: float = 0.05, ignore=()) -> ChangeDetector:
    return ChangeDetector(WatchTarget.create(root, interval, ignore))


class TestBaseline:
    def test_first_poll_returns_false_then_detects_modification(self, project: Path):
        detector = make_detector(project)
        assert detector.poll() is False

        (project / "a.txt").write_text("version two, longer")
        assert detector.poll() is True

    def test_unchanged_tree_reports_no_change(self, project: Path):
        detector = make_detector(project)
        detector.poll()
        assert detector.poll() is False
        assert detector.poll() is False

    def test_change_is_reported_once(self, project: Path):
        detector = make_detector(project)
        detector.poll()
        (project / "a.txt").write_text("version two, longer")
        assert detector.poll() is True
        assert detector.poll() is False

    def test_reset_forgets_baseline(self, project: Path):
        detector = make_detector(project)
        detector.poll()
        (project / "a.txt").write_text("version two, longer")
        detector.reset()
        assert detector.poll() is False


class TestChangeKinds:
    def test_created_file(self, project: Path):
        detector = make_detector(project)
        detector.poll()
        (project / "b.txt").write_text("new")
        assert detector.poll() is True

    def test_deleted_file(self, project: Path):
        detector = make_detector(project)
        detector.poll()
        (project / "a.txt").unlink()
        assert detector.poll() is True

    def test_renamed_file(self, project: Path):
        detector = make_detector(project)
        detector.poll()
        (project / "a.txt").rename(project / "renamed.txt")
        assert detector.poll() is True

    def test_mtime_only_change(self, project: Path):
        detector = make_detector(project)
        detector.poll()
        stat = (project / "a.txt").stat()
        os.utime(project / "a.txt", (stat.st_atime, stat.st_mtime + 5))
        assert detector.poll() is True

    def test_nested_file(self, project: Path):
        (project / "src").mkdir()
        (project / "src" / "main.rs").write_text("fn main() {}")
        detector = make_detector(project)
        detector.poll()
        (project / "src" / "main.rs").write_text('fn main() { println!("hi"); }')
        assert detector.poll() is True

    def test_created_directory(self, project: Path):
        detector = make_detector(project)
        detector.poll()
        (project / "empty").mkdir()
        assert detector.poll() is True


class TestIgnorePatterns:
    def test_ignored_directory_is_pruned(self, project: Path):
        (project / "target").mkdir()
        detector = make_detector(project, ignore=("target",))
        detector.poll()
        (project / "target" / "debug").mkdir()
        (project / "target" / "debug" / "app").write_text("binary")
        assert detector.poll() is False

    def test_ignored_file_next_to_watched_files(self, project: Path):
        detector = make_detector(project, ignore=("out.log",))
        detector.poll()
        (project / "out.log").write_text("log output\n")
        assert detector.poll() is False

    def test_glob_and_relative_patterns(self, project: Path):
        (project / "docs").mkdir()
        detector = make_detector(project, ignore=("*.swp", "docs/*.md"))
        detector.poll()
        (project / ".a.txt.swp").write_text("swap")
        (project / "docs" / "notes.md").write_text("notes")
        assert detector.poll() is False

        (project / "docs" / "keep.txt").write_text("watched")
        assert detector.poll() is True

    def test_is_ignored(self, project: Path):
        detector = make_detector(project, ignore=(".git", "*.tmp"))
        assert detector.is_ignored(str(project / ".git"))
        assert detector.is_ignored(str(project / "sub" / "file.tmp"))
        assert not detector.is_ignored(str(project / "a.txt"))


class TestTiming:
    def test_poll_waits_for_interval(self, project: Path):
        detector = make_detector(project, interval=0.3)
        detector.poll()
        started = time.monotonic()
        detector.poll()
        assert time.monotonic() - started >= 0.25

    def test_wakeup_returns_early_without_sampling(self, project: Path):
        detector = make_detector(project, interval=5.0)
        detector.poll()
        wakeup = threading.Event()
        wakeup.set()
        started = time.monotonic()
        assert detector.poll(wakeup) is False
        assert time.monotonic() - started < 1.0
        assert detector.samples_taken == 1

    def test_interval_must_be_positive(self, project: Path):
        with pytest.raises(ValueError):
            WatchTarget.create(project, interval=0)


class TestErrors:
    def test_missing_root_is_fatal(self, tmp_path: Path):
        detector = make_detector(tmp_path / "does-not-exist")
        with pytest.raises(WatchRootError):
            detector.poll()

    def test_root_removed_after_baseline_is_fatal(self, project: Path):
        detector = make_detector(project)
        detector.poll()
        shutil.rmtree(project)
        with pytest.raises(WatchRootError):
            detector.poll()

    @pytest.mark.skipif(os.name == "nt" or os.geteuid() == 0, reason="permissions are not enforced")
    def test_unreadable_subdirectory_is_skipped(self, project: Path):
        locked = project / "locked"
        locked.mkdir()
        (locked / "secret.txt").write_text("hidden")
        locked.chmod(0)
        try:
            detector = make_detector(project)
            assert detector.poll() is False
            (project / "a.txt").write_text("version two, longer")
            assert detector.poll() is True
        finally:
            locked.chmod(0o755)
